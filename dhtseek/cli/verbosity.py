"""Verbosity management for the dhtseek CLI.

Maps the number of ``-v`` flags to a logging level.
"""

from __future__ import annotations

import logging
from enum import IntEnum


class VerbosityLevel(IntEnum):
    """Verbosity levels for the CLI."""

    NORMAL = 0  # Default: level from the configuration
    VERBOSE = 1  # -v: INFO and above
    DEBUG = 2  # -vv: DEBUG and above


class VerbosityManager:
    """Manages verbosity levels and maps them to logging levels."""

    LEVEL_TO_LOGGING: dict[VerbosityLevel, int | None] = {
        VerbosityLevel.NORMAL: None,
        VerbosityLevel.VERBOSE: logging.INFO,
        VerbosityLevel.DEBUG: logging.DEBUG,
    }

    def __init__(self, verbosity_count: int = 0):
        """Initialize verbosity manager.

        Args:
            verbosity_count: Number of -v flags (clamped to 0-2)

        """
        self.verbosity_count = max(0, min(2, verbosity_count))
        self.level = VerbosityLevel(self.verbosity_count)

    @classmethod
    def from_count(cls, count: int) -> VerbosityManager:
        return cls(count)

    def get_logging_level(self) -> int | None:
        """Logging level override, or None to keep the configured level."""
        return self.LEVEL_TO_LOGGING[self.level]
