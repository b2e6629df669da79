"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
and returns a frozen ``SyncConfig`` that is built once at startup and passed
to every component.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

DEFAULT_CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV_VAR = "CALSYNC_CONFIG"
DEFAULT_NOTION_API_VERSION = "2022-06-28"
DEFAULT_LOOKAHEAD_DAYS = 40
DEFAULT_FULL_RESYNC_CRON = "0 3 1 * *"
DEFAULT_ROLLING_CRON = "*/15 * * * *"
VALID_LOG_FORMATS = ("text", "json")

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class PropertyNames:
    """Notion property names the projector writes to."""

    title: str = "Name"
    date: str = "Date"
    calendar: str = "Calendar"
    location: str = "Location"
    description: str = "Description"
    attendees: str = "Attendees"
    url: str = "URL"
    identity: str = "EventId"

    def all(self) -> tuple[str, ...]:
        return tuple(getattr(self, f.name) for f in fields(self))


@dataclass(frozen=True)
class NotionConfig:
    token: str
    database_id: str
    api_version: str = DEFAULT_NOTION_API_VERSION
    properties: PropertyNames = field(default_factory=PropertyNames)


@dataclass(frozen=True)
class GoogleConfig:
    client_id: str
    client_secret: str
    refresh_token: str


@dataclass(frozen=True)
class SyncSettings:
    """Reconciliation behaviour from the [sync] section.

    ``calendars`` is an allowlist of calendar names; empty means every
    calendar visible to the account.  ``halt_on_error`` stops the upsert
    phase at the first failed event instead of collecting the failure.
    """

    timezone: str = "UTC"
    calendars: tuple[str, ...] = ()
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    halt_on_error: bool = False

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class ScheduleSettings:
    full_resync: str = DEFAULT_FULL_RESYNC_CRON
    rolling: str = DEFAULT_ROLLING_CRON


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass(frozen=True)
class SyncConfig:
    """Parsed and validated calsync configuration."""

    notion: NotionConfig
    google: GoogleConfig
    sync: SyncSettings = field(default_factory=SyncSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Non-string leaf values are returned unchanged.

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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], path: str) -> dict[str, Any]:
    raw = data.get(path.rsplit(".", 1)[-1], {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return raw


def _required_string(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if value is None:
        raise ConfigError(f"Missing required field: {path}.{key}")
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{path}.{key} must be a non-empty string")
    return value.strip()


def _optional_string(section: dict[str, Any], key: str, path: str, default: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{path}.{key} must be a non-empty string when set")
    return value.strip()


def _parse_properties(notion_section: dict[str, Any]) -> PropertyNames:
    raw = _section(notion_section, "notion.properties")
    known = {f.name for f in fields(PropertyNames)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown notion.properties key(s): {', '.join(unknown)}")

    overrides = {
        key: _optional_string(raw, key, "notion.properties", "") for key in raw
    }
    names = PropertyNames(**overrides)
    if len(set(names.all())) != len(names.all()):
        raise ConfigError("notion.properties names must be unique")
    return names


def _parse_notion(data: dict[str, Any]) -> NotionConfig:
    section = _section(data, "notion")
    return NotionConfig(
        token=_required_string(section, "token", "notion"),
        database_id=_required_string(section, "database_id", "notion"),
        api_version=_optional_string(
            section, "api_version", "notion", DEFAULT_NOTION_API_VERSION
        ),
        properties=_parse_properties(section),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    return GoogleConfig(
        client_id=_required_string(section, "client_id", "google"),
        client_secret=_required_string(section, "client_secret", "google"),
        refresh_token=_required_string(section, "refresh_token", "google"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncSettings:
    section = _section(data, "sync")

    timezone = _optional_string(section, "timezone", "sync", "UTC")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.timezone: {timezone!r}") from exc

    raw_calendars = section.get("calendars", [])
    if not isinstance(raw_calendars, list) or not all(
        isinstance(name, str) for name in raw_calendars
    ):
        raise ConfigError("sync.calendars must be a list of calendar names")
    calendars = tuple(name.strip() for name in raw_calendars if name.strip())

    lookahead_days = section.get("lookahead_days", DEFAULT_LOOKAHEAD_DAYS)
    if isinstance(lookahead_days, bool) or not isinstance(lookahead_days, int):
        raise ConfigError("sync.lookahead_days must be an integer")
    if lookahead_days <= 0:
        raise ConfigError(
            f"Invalid sync.lookahead_days: {lookahead_days!r}. Must be a positive integer."
        )

    halt_on_error = section.get("halt_on_error", False)
    if not isinstance(halt_on_error, bool):
        raise ConfigError("sync.halt_on_error must be a boolean")

    return SyncSettings(
        timezone=timezone,
        calendars=calendars,
        lookahead_days=lookahead_days,
        halt_on_error=halt_on_error,
    )


def _parse_schedule(data: dict[str, Any]) -> ScheduleSettings:
    section = _section(data, "schedule")
    full_resync = _optional_string(section, "full_resync", "schedule", DEFAULT_FULL_RESYNC_CRON)
    rolling = _optional_string(section, "rolling", "schedule", DEFAULT_ROLLING_CRON)
    for key, cron in (("full_resync", full_resync), ("rolling", rolling)):
        if not croniter.is_valid(cron):
            raise ConfigError(f"Invalid schedule.{key} cron expression: {cron!r}")
    return ScheduleSettings(full_resync=full_resync, rolling=rolling)


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = _optional_string(section, "level", "logging", "INFO").upper()
    fmt = _optional_string(section, "format", "logging", "text").lower()
    if fmt not in VALID_LOG_FORMATS:
        raise ConfigError(
            f"Invalid logging.format: {fmt!r}. Expected one of {', '.join(VALID_LOG_FORMATS)}."
        )
    log_file = section.get("file")
    if log_file is not None and (not isinstance(log_file, str) or not log_file.strip()):
        raise ConfigError("logging.file must be a non-empty string when set")
    return LoggingConfig(level=level, format=fmt, file=log_file.strip() if log_file else None)


def resolve_config_path(explicit: Path | None = None) -> Path:
    """Pick the config file: explicit path, then ``$CALSYNC_CONFIG``, then the default."""
    if explicit is not None:
        return explicit
    from_env = os.environ.get(CONFIG_PATH_ENV_VAR)
    if from_env:
        return Path(from_env)
    return Path(DEFAULT_CONFIG_FILENAME)


def load_config(path: Path) -> SyncConfig:
    """Load and validate a calsync TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, is not UTF-8 TOML, or lacks required fields.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Config file is not valid UTF-8: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    data = resolve_env_vars(data)

    return SyncConfig(
        notion=_parse_notion(data),
        google=_parse_google(data),
        sync=_parse_sync(data),
        schedule=_parse_schedule(data),
        logging=_parse_logging(data),
    )
