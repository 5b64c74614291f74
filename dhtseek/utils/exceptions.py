"""Exception hierarchy for dhtseek.

Every error raised by the package derives from DHTSeekError so the CLI can
report fatal startup failures uniformly.
"""

from __future__ import annotations

from typing import Any


class DHTSeekError(Exception):
    """Base exception for all dhtseek errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize dhtseek error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(DHTSeekError):
    """Network-related errors."""


class DHTError(NetworkError):
    """DHT (Distributed Hash Table) errors."""


class EngineStartError(DHTError):
    """The DHT engine could not be constructed (e.g. UDP port unavailable)."""


class ValidationError(DHTSeekError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class InfoHashDecodeError(ValidationError):
    """Malformed infohash text."""


class PeerAddressDecodeError(ValidationError):
    """Compact peer address token of the wrong shape."""


class ResourceError(DHTSeekError):
    """Resource management errors."""


class ProfilingError(ResourceError):
    """CPU profile output could not be created."""
