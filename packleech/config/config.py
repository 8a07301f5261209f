"""Configuration management for packleech.

Configuration is loaded hierarchically: defaults -> TOML file -> environment
(``PACKLEECH_*``) -> command line overrides applied by the caller.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import toml
from pydantic import ValidationError as PydanticValidationError

from packleech.models import Config, DiskConfig, NetworkConfig, ObservabilityConfig
from packleech.utils.exceptions import ConfigurationError
from packleech.utils.logging_config import get_logger, setup_logging

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from rich.console import Console

logger = get_logger(__name__)

CONFIG_FILE_NAME = "packleech.toml"

# Global configuration instance
_config_manager: ConfigManager | None = None

# Environment variable -> dotted config path
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "PACKLEECH_CONCURRENCY": "network.concurrency",
    "PACKLEECH_REQUEST_TIMEOUT": "network.request_timeout",
    "PACKLEECH_CONNECT_TIMEOUT": "network.connect_timeout",
    "PACKLEECH_MAX_ATTEMPTS": "network.max_attempts",
    "PACKLEECH_BASE_DELAY": "network.base_delay",
    "PACKLEECH_MAX_DELAY": "network.max_delay",
    "PACKLEECH_JITTER": "network.jitter",
    "PACKLEECH_MAX_PIECE_ATTEMPTS": "network.max_piece_attempts",
    "PACKLEECH_USER_AGENT": "network.user_agent",
    "PACKLEECH_WEBSEEDS": "network.webseeds",
    # Disk
    "PACKLEECH_PREALLOCATE": "disk.preallocate",
    "PACKLEECH_RESERVE_MIB": "disk.reserve_mib",
    "PACKLEECH_MEMORY_BUDGET_MIB": "disk.memory_budget_mib",
    "PACKLEECH_KEEP_RESUME_FILE": "disk.keep_resume_file",
    "PACKLEECH_ABORT_POLICY": "disk.abort_policy",
    # Selection
    "PACKLEECH_MAX_SIZE": "selection.max_size",
    "PACKLEECH_MAX_SIZE_PERCENTAGE": "selection.max_size_percentage",
    "PACKLEECH_INCLUDE_OVERSIZED": "selection.include_oversized",
    # Observability
    "PACKLEECH_LOG_LEVEL": "observability.log_level",
    "PACKLEECH_LOG_FILE": "observability.log_file",
    "PACKLEECH_STRUCTURED_LOGGING": "observability.structured_logging",
}

_LIST_PATHS = {"network.webseeds"}
_STRING_PATHS = {
    "network.user_agent",
    "selection.max_size",
    "observability.log_file",
    "observability.log_level",
    "disk.preallocate",
    "disk.abort_policy",
}


def _parse_env_value(raw: str, path: str) -> bool | int | float | str | list[str]:
    if path in _LIST_PATHS:
        return [item.strip() for item in raw.split(",") if item.strip()]
    if path in _STRING_PATHS:
        return raw

    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
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
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for
                packleech.toml in the standard locations

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file).expanduser()
            if not path.exists():
                msg = f"Configuration file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "packleech" / CONFIG_FILE_NAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e
            logger.debug("Loaded configuration from %s", self.config_file)

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except (PydanticValidationError, TypeError) as e:
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

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def apply_overrides(self, overrides: dict[str, Any]) -> Config:
        """Apply dotted-path overrides (e.g. from the CLI) and revalidate."""
        nested: dict[str, Any] = {}
        for path, value in overrides.items():
            if value is not None:
                _set_nested(nested, path, value)
        data = self._merge_config(self.config.model_dump(mode="json"), nested)
        try:
            self.config = Config(**data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e
        return self.config

    def export(self) -> str:
        """Export current configuration as TOML."""
        data = self.config.to_dict()
        # TOML has no null
        data["observability"] = {
            k: v for k, v in data["observability"].items() if v is not None
        }
        return toml.dumps(data)

    def setup_logging(self, console: Console | None = None) -> None:
        """Configure logging from the observability section."""
        setup_logging(self.config.observability, console)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config


def reset_config() -> None:
    """Forget the global configuration; the next access reloads it."""
    global _config_manager
    _config_manager = None


def get_network_config() -> NetworkConfig:
    """Get network configuration."""
    return get_config().network


def get_disk_config() -> DiskConfig:
    """Get disk configuration."""
    return get_config().disk


def get_observability_config() -> ObservabilityConfig:
    """Get observability configuration."""
    return get_config().observability
