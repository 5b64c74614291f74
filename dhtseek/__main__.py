"""Allow ``python -m dhtseek``."""

from __future__ import annotations

from dhtseek.cli.main import main

if __name__ == "__main__":
    main()
