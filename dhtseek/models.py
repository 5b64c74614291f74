"""Pydantic models for dhtseek.

Provides validated configuration models for the DHT engine, the session
controller and the observability side services.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DiscoveryConfig(BaseModel):
    """DHT engine and request pacing configuration."""

    dht_port: int = Field(
        default=0,
        ge=0,
        le=65535,
        description="DHT UDP port (0 lets the operating system choose)",
    )
    bind_ip: str = Field(default="0.0.0.0", description="DHT UDP bind address")  # nosec B104
    dht_bootstrap_nodes: list[str] = Field(
        default_factory=lambda: [
            "router.bittorrent.com:6881",
            "dht.transmissionbt.com:6881",
            "router.utorrent.com:6881",
            "dht.libtorrent.org:25401",
        ],
        description="DHT bootstrap nodes (host:port)",
    )
    min_peer_hint: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Advisory number of peers a lookup tries to find",
    )
    request_interval: float = Field(
        default=5.0,
        gt=0.0,
        le=3600.0,
        description="Seconds between peer requests issued by the session",
    )
    announce: bool = Field(
        default=False,
        description="Announce our port to nodes that returned a token",
    )
    query_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Timeout for a single KRPC query in seconds",
    )
    lookup_alpha: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Parallel queries per iterative lookup step",
    )
    lookup_k: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Closest-node set size for iterative lookups",
    )
    lookup_max_depth: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum iterative lookup depth",
    )
    max_inflight_lookups: int = Field(
        default=0,
        ge=0,
        le=1000,
        description="Maximum concurrent lookups (0 = unbounded)",
    )
    refresh_interval: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Routing table refresh interval in seconds",
    )

    @field_validator("dht_bootstrap_nodes")
    @classmethod
    def validate_bootstrap_nodes(cls, v: list[str]) -> list[str]:
        """Reject bootstrap entries without a numeric port."""
        for entry in v:
            host, sep, port = entry.rpartition(":")
            if not sep or not host or not port.isdigit():
                msg = f"Invalid bootstrap node {entry!r} (expected host:port)"
                raise ValueError(msg)
        return v


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Write JSON lines to the log file",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )
    enable_debug_http: bool = Field(
        default=True,
        description="Serve internal counters on /debug/vars",
    )
    debug_http_host: str = Field(
        default="127.0.0.1",
        description="Diagnostic HTTP bind address",
    )
    debug_http_port: int = Field(
        default=8711,
        ge=1,
        le=65535,
        description="Diagnostic HTTP port",
    )
    cpuprofile: str | None = Field(
        default=None,
        description="Write a CPU profile to this path",
    )


class Config(BaseModel):
    """Main configuration model."""

    discovery: DiscoveryConfig = Field(
        default_factory=DiscoveryConfig,
        description="Discovery configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
