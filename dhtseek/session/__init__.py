"""Discovery session: request pacing, result draining and shutdown."""

from __future__ import annotations

from dhtseek.session.controller import SessionController, SessionState
from dhtseek.session.drain import ResultDrainer

__all__ = ["ResultDrainer", "SessionController", "SessionState"]
