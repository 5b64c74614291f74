"""Rich logging integration for dhtseek.

Console logs go through Rich; file logs get the same text with markup removed.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

_MARKUP_PATTERN = re.compile(r"(?<!\\)\[/?[a-zA-Z#][^\]]*\]")

# Lines rendered by the drain loop, highlighted on the console
_PEER_PATTERN = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}:\d{1,5}\b")


class CorrelationRichHandler(RichHandler):
    """RichHandler that stamps correlation IDs and highlights peer addresses."""

    def __init__(
        self,
        *args: Any,
        console: Console | None = None,
        highlight_peers: bool = True,
        **kwargs: Any,
    ) -> None:
        """Initialize the handler.

        Args:
            *args: Positional arguments for RichHandler
            console: Optional Rich Console instance
            highlight_peers: Color IPv4 peer addresses in messages
            **kwargs: Keyword arguments for RichHandler

        """
        if console is None:
            console = Console(file=sys.stdout, markup=True, color_system="auto")
        self.highlight_peers = highlight_peers
        kwargs.setdefault("markup", True)
        super().__init__(*args, console=console, **kwargs)

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record with its correlation ID attached."""
        try:
            if not hasattr(record, "correlation_id"):
                from dhtseek.utils.logging_config import correlation_id

                record.correlation_id = correlation_id.get() or "no-correlation-id"

            if self.highlight_peers:
                # Other handlers see the same record; render from a copy.
                message = escape_markup(record.getMessage())
                record = logging.makeLogRecord(record.__dict__)
                record.msg = _PEER_PATTERN.sub(r"[bright_cyan]\g<0>[/bright_cyan]", message)
                record.args = ()

            super().emit(record)
        except Exception:
            self.handleError(record)


def escape_markup(text: str) -> str:
    """Escape square brackets that Rich would read as markup."""
    return escape(text)


def strip_rich_markup(text: str) -> str:
    """Strip Rich markup from text for file logging.

    Args:
        text: Text with Rich markup

    Returns:
        Text without Rich markup

    """
    return _MARKUP_PATTERN.sub("", text).replace(r"\[", "[")


class FileFormatter(logging.Formatter):
    """Formatter for file output that strips Rich markup."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, stripping Rich markup for file output."""
        return strip_rich_markup(super().format(record))


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
) -> logging.Handler:
    """Create a RichHandler with correlation ID support.

    Args:
        console: Optional Rich Console instance
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks

    Returns:
        Configured RichHandler instance

    """
    return CorrelationRichHandler(
        console=console,
        level=level,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
    )
