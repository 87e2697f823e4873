"""
Configuration management for the watcher metrics pipeline.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/watcher-metrics/config.yml or --config path)
3. Environment variables (WATCHER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/watcher-metrics/config.yml")
DEFAULT_ENV_PREFIX = "WATCHER_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON lines instead of plain text.
        log_file: Optional size-rotated log file path.
        debug_mode: Force debug level logging.
        max_bytes: Optional max log file size.
        backup_count: Optional number of rotated log files to keep.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error, critical",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit structured JSON log lines",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (size-rotated)",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )
    max_bytes: int | None = Field(
        default=None,
        description="Maximum log file size in bytes",
        ge=1024,
    )
    backup_count: int | None = Field(
        default=None,
        description="Number of backup log files to keep",
        ge=0,
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Raw log and rollup storage configuration.

    Attributes:
        data_dir: Root directory holding one sub-directory per metric source.
        raw_retention_seconds: Age after which raw samples are rotated out.
    """

    data_dir: str = Field(
        default="/home/fpp/media/logs/watcher-data",
        description="Root directory for raw logs, rollup logs and state files",
    )
    raw_retention_seconds: int = Field(
        default=25 * 3600,
        description="Raw sample retention in seconds",
        ge=3600,
    )


# =============================================================================
# Rollup Configuration
# =============================================================================


class RollupConfig(BaseModel):
    """Rollup processing configuration.

    Attributes:
        safety_margin_seconds: Time a bucket must have been closed before
            it is aggregated.
        interval_seconds: How often the daemon runs the rollup pass.
    """

    safety_margin_seconds: int = Field(
        default=120,
        description="Seconds after a bucket's end before it may be aggregated",
        ge=0,
        le=3600,
    )
    interval_seconds: int = Field(
        default=60,
        description="Rollup pass interval in seconds",
        ge=10,
        le=3600,
    )


# =============================================================================
# Collection Configuration
# =============================================================================

VALID_COLLECTORS = {"system", "ping", "network_quality", "efuse"}


class CollectionConfig(BaseModel):
    """Sample collection configuration.

    Attributes:
        interval_seconds: Sampling interval of the collection daemon.
        collectors: Collectors the daemon samples from.
    """

    interval_seconds: int = Field(
        default=60,
        description="Sampling interval in seconds",
        ge=1,
        le=3600,
    )
    collectors: list[str] = Field(
        default_factory=lambda: ["system"],
        description="Enabled collectors: system, ping, network_quality, efuse",
    )

    @field_validator("collectors", mode="before")
    @classmethod
    def validate_collectors(cls, v: Any) -> list[str]:
        """Accept a comma separated string and reject unknown collectors."""
        if isinstance(v, str):
            v = [item.strip() for item in v.split(",") if item.strip()]
        names = [str(item).lower() for item in v]
        unknown = set(names) - VALID_COLLECTORS
        if unknown:
            raise ValueError(
                f"Invalid collectors: {', '.join(sorted(unknown))}. "
                f"Must be among: {', '.join(sorted(VALID_COLLECTORS))}"
            )
        return names


class EfuseConfig(BaseModel):
    """eFuse current monitoring configuration.

    Attributes:
        retention_days: Maximum retention of eFuse rollups.
    """

    retention_days: int = Field(
        default=7,
        description="eFuse rollup retention in days",
        ge=1,
        le=90,
    )


# =============================================================================
# Daemon Configuration
# =============================================================================


class DaemonConfig(BaseModel):
    """Collector daemon configuration.

    Attributes:
        name: Daemon name, used for the lock file name and in logs.
        lock_dir: Directory holding the PID lock file.
    """

    name: str = Field(
        default="metrics-collector",
        description="Daemon name used for the lock file",
    )
    lock_dir: str = Field(
        default="/tmp",
        description="Directory for PID lock files",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Daemon names end up in file names."""
        if not v or "/" in v:
            raise ValueError(f"Invalid daemon name: {v!r}")
        return v


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        storage: Storage locations and raw retention.
        rollup: Rollup processing settings.
        collection: Sampling settings.
        efuse: eFuse retention settings.
        daemon: Single-writer daemon settings.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Storage configuration",
    )
    rollup: RollupConfig = Field(
        default_factory=RollupConfig,
        description="Rollup configuration",
    )
    collection: CollectionConfig = Field(
        default_factory=CollectionConfig,
        description="Collection configuration",
    )
    efuse: EfuseConfig = Field(
        default_factory=EfuseConfig,
        description="eFuse configuration",
    )
    daemon: DaemonConfig = Field(
        default_factory=DaemonConfig,
        description="Daemon configuration",
    )

    def source_dir(self, source: str) -> Path:
        """Directory holding the logs of one metric source."""
        return Path(self.storage.data_dir) / source


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    ``WATCHER_ROLLUP__SAFETY_MARGIN_SECONDS=60``.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Watcher metrics collector and rollup daemon",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--data-dir",
        type=str,
        help="Override the metrics data directory",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.data_dir:
        result["storage"] = {"data_dir": parsed.data_dir}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--data-dir", "/tmp/watcher"])
        >>> config.storage.data_dir
        '/tmp/watcher'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
