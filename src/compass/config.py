"""Compass sync configuration loading and validation.

Reads compass.toml from a config directory, resolves ``${VAR}`` references
from the environment, and returns a validated CompassConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from compass.db import db_params_from_env

CONFIG_FILENAME = "compass.toml"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when compass configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from [database]; unset fields come from the environment."""

    name: str = "compass"
    host: str = "localhost"
    port: int = 5432
    user: str = "compass"
    password: str = "compass"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class SyncConfig:
    """Sync engine tuning from the [sync] section."""

    channel_ttl_days: int = 7
    refresh_window_hours: int = 24
    someday_weekly_limit: int = 9
    webhook_address: str | None = None
    page_size: int = 250

    @property
    def channel_ttl(self) -> timedelta:
        return timedelta(days=self.channel_ttl_days)

    @property
    def refresh_window(self) -> timedelta:
        return timedelta(hours=self.refresh_window_hours)


@dataclass
class GoogleConfig:
    """OAuth client and account credentials from the [google] section."""

    client_id: str
    client_secret: str
    refresh_token: str
    webhook_token: str | None = None


@dataclass
class CompassConfig:
    """Parsed compass.toml."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: GoogleConfig | None = None
    user_id: str | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaves pass through unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _positive_int(section: dict[str, Any], key: str, default: int, label: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}: {value!r}. Must be a positive integer.")
    return value


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    env = db_params_from_env()
    name = str(section.get("name", "compass")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    return DatabaseConfig(
        name=name,
        host=str(section.get("host", env["host"])),
        port=_positive_int(section, "port", int(env["port"] or 5432), "database.port"),
        user=str(section.get("user", env["user"])),
        password=str(section.get("password", env["password"])),
        ssl=_optional_str(section, "ssl") or (env["ssl"] if isinstance(env["ssl"], str) else None),
        min_pool_size=_positive_int(section, "min_pool_size", 2, "database.min_pool_size"),
        max_pool_size=_positive_int(section, "max_pool_size", 10, "database.max_pool_size"),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_file=_optional_str(section, "log_file"))


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    ttl_days = _positive_int(section, "channel_ttl_days", 7, "sync.channel_ttl_days")
    if ttl_days > 7:
        raise ConfigError(
            f"Invalid sync.channel_ttl_days: {ttl_days!r}. Calendar channels last at most 7 days."
        )
    return SyncConfig(
        channel_ttl_days=ttl_days,
        refresh_window_hours=_positive_int(
            section, "refresh_window_hours", 24, "sync.refresh_window_hours"
        ),
        someday_weekly_limit=_positive_int(
            section, "someday_weekly_limit", 9, "sync.someday_weekly_limit"
        ),
        webhook_address=_optional_str(section, "webhook_address"),
        page_size=_positive_int(section, "page_size", 250, "sync.page_size"),
    )


def _parse_google(section: dict[str, Any] | None) -> GoogleConfig | None:
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ConfigError("[google] must be a table")

    values: dict[str, str] = {}
    for key in ("client_id", "client_secret", "refresh_token"):
        value = _optional_str(section, key)
        if value is None:
            raise ConfigError(f"Missing required field: google.{key}")
        values[key] = value
    return GoogleConfig(**values, webhook_token=_optional_str(section, "webhook_token"))


def load_config(config_dir: Path) -> CompassConfig:
    """Load and validate compass.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    for name in ("database", "logging", "sync"):
        if not isinstance(data.get(name, {}), dict):
            raise ConfigError(f"[{name}] must be a table")

    return CompassConfig(
        database=_parse_database(data.get("database", {})),
        logging=_parse_logging(data.get("logging", {})),
        sync=_parse_sync(data.get("sync", {})),
        google=_parse_google(data.get("google")),
        user_id=_optional_str(data, "user_id"),
    )
