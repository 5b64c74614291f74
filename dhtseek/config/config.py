"""Configuration management for dhtseek.

Loads settings hierarchically: defaults → TOML file → environment
(``DHTSEEK_*``) → explicit overrides (the CLI options).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from dhtseek.models import Config
from dhtseek.utils.exceptions import ConfigurationError
from dhtseek.utils.logging_config import setup_logging

CONFIG_FILE_NAME = "dhtseek.toml"

ENV_MAPPINGS: dict[str, str] = {
    # Discovery
    "DHTSEEK_DHT_PORT": "discovery.dht_port",
    "DHTSEEK_BIND_IP": "discovery.bind_ip",
    "DHTSEEK_BOOTSTRAP_NODES": "discovery.dht_bootstrap_nodes",
    "DHTSEEK_MIN_PEER_HINT": "discovery.min_peer_hint",
    "DHTSEEK_REQUEST_INTERVAL": "discovery.request_interval",
    "DHTSEEK_ANNOUNCE": "discovery.announce",
    "DHTSEEK_QUERY_TIMEOUT": "discovery.query_timeout",
    "DHTSEEK_LOOKUP_ALPHA": "discovery.lookup_alpha",
    "DHTSEEK_LOOKUP_K": "discovery.lookup_k",
    "DHTSEEK_LOOKUP_MAX_DEPTH": "discovery.lookup_max_depth",
    "DHTSEEK_MAX_INFLIGHT_LOOKUPS": "discovery.max_inflight_lookups",
    "DHTSEEK_REFRESH_INTERVAL": "discovery.refresh_interval",
    # Observability
    "DHTSEEK_LOG_LEVEL": "observability.log_level",
    "DHTSEEK_LOG_FILE": "observability.log_file",
    "DHTSEEK_STRUCTURED_LOGGING": "observability.structured_logging",
    "DHTSEEK_LOG_CORRELATION_ID": "observability.log_correlation_id",
    "DHTSEEK_ENABLE_DEBUG_HTTP": "observability.enable_debug_http",
    "DHTSEEK_DEBUG_HTTP_HOST": "observability.debug_http_host",
    "DHTSEEK_DEBUG_HTTP_PORT": "observability.debug_http_port",
    "DHTSEEK_CPUPROFILE": "observability.cpuprofile",
}

_LIST_PATHS = {"discovery.dht_bootstrap_nodes"}
_STRING_PATHS = {
    "discovery.bind_ip",
    "observability.log_level",
    "observability.log_file",
    "observability.debug_http_host",
    "observability.cpuprofile",
}

# Global configuration instance
_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str, path: str) -> bool | int | float | str | list[str]:
    if path in _LIST_PATHS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    if path in _STRING_PATHS:
        return raw

    low = raw.lower()
    if low in {"true", "1", "yes", "on"}:
        return True
    if low in {"false", "0", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for dhtseek.toml
            overrides: Dotted-path values applied last, e.g.
                ``{"discovery.dht_port": 6881}``; None values are ignored

        Raises:
            ConfigurationError: if the file cannot be read or a value is invalid.

        """
        self._explicit_file = config_file is not None
        self.config_file = self._find_config_file(config_file)
        self.overrides = overrides or {}
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "dhtseek" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file, environment and overrides."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            if not self.config_file.exists():
                if self._explicit_file:
                    msg = f"Config file not found: {self.config_file}"
                    raise ConfigurationError(msg, {"path": str(self.config_file)})
            else:
                try:
                    with open(self.config_file, encoding="utf-8") as f:
                        config_data.update(toml.load(f))
                except (OSError, toml.TomlDecodeError) as e:
                    msg = f"Failed to load config file {self.config_file}: {e}"
                    raise ConfigurationError(msg, {"path": str(self.config_file)}) from e

        config_data = self._merge_config(config_data, self._get_env_config())
        config_data = self._merge_config(config_data, self._get_override_config())

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _get_override_config(self) -> dict[str, Any]:
        override_config: dict[str, Any] = {}
        for cfg_path, value in self.overrides.items():
            if value is not None:
                _set_nested(override_config, cfg_path, value)
        return override_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def setup_logging(self, level: int | str | None = None) -> None:
        """Set up logging from the observability settings."""
        setup_logging(self.config.observability, level)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, overrides)
    return _config_manager


def reset_config() -> None:
    """Forget the global configuration (used by tests)."""
    global _config_manager
    _config_manager = None
