"""weekgrid configuration loading and validation.

Reads ``weekgrid.toml``, resolves ``${VAR}`` placeholders from the
environment, parses every section and returns a validated
:class:`WeekgridConfig` dataclass.  Every section is optional; defaults
reproduce the stock planner behaviour.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Any

from weekgrid.calendar.backoff import DEFAULT_BASE_MS, DEFAULT_CAP_MS, BackoffPolicy
from weekgrid.calendar.drag import GridGeometry
from weekgrid.calendar.remote import (
    DEFAULT_PLAN_CALENDAR_NAME,
    DEFAULT_WINDOW_FUTURE_DAYS,
    DEFAULT_WINDOW_PAST_DAYS,
    GoogleCredentials,
)
from weekgrid.calendar.slots import DEFAULT_BLOCK_TITLE, PlanningWindow
from weekgrid.core.logging import VALID_FORMATS
from weekgrid.db import DEFAULT_DB_NAME

DEFAULT_CONFIG_FILENAME = "weekgrid.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_HHMM_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class ConfigError(Exception):
    """Raised when weekgrid configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8400


@dataclass
class DatabaseConfig:
    """Database selection; connection parameters come from the environment."""

    name: str = DEFAULT_DB_NAME
    run_migrations: bool = True


@dataclass
class PlanningConfig:
    """Slot-finder window from the [planning] section."""

    day_start: time = time(8, 0)
    day_end: time = time(20, 0)
    step_minutes: int = 15
    block_minutes: int = 90
    block_title: str = DEFAULT_BLOCK_TITLE

    def window(self) -> PlanningWindow:
        return PlanningWindow(
            start=self.day_start,
            end=self.day_end,
            step_minutes=self.step_minutes,
            block_minutes=self.block_minutes,
        )


@dataclass
class GridConfig:
    hour_height: float = 56.0
    snap_minutes: int = 15

    def geometry(self) -> GridGeometry:
        return GridGeometry(hour_height=self.hour_height, snap_minutes=self.snap_minutes)


@dataclass
class SyncConfig:
    """Sync timer and backoff from the [sync] section."""

    interval_minutes: int = 10
    backoff_base_ms: int = DEFAULT_BASE_MS
    backoff_cap_ms: int = DEFAULT_CAP_MS

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(base_ms=self.backoff_base_ms, cap_ms=self.backoff_cap_ms)


@dataclass
class GoogleConfig:
    """Google Calendar remote from the [google] section."""

    enabled: bool = False
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    email: str | None = None
    plan_calendar_name: str = DEFAULT_PLAN_CALENDAR_NAME
    window_past_days: int = DEFAULT_WINDOW_PAST_DAYS
    window_future_days: int = DEFAULT_WINDOW_FUTURE_DAYS

    def credentials(self) -> GoogleCredentials:
        return GoogleCredentials(
            client_id=self.client_id or "",
            client_secret=self.client_secret or "",
            refresh_token=self.refresh_token or "",
        )


@dataclass
class WeekgridConfig:
    """Parsed and validated weekgrid configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if isinstance(raw, bool) or value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _parse_hhmm(raw: Any, path: str) -> time:
    if isinstance(raw, time):
        return raw
    match = _HHMM_PATTERN.match(str(raw).strip())
    if match is None:
        raise ConfigError(f"Invalid {path}: {raw!r}. Expected HH:MM.")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigError(f"Invalid {path}: {raw!r}. Expected HH:MM.")
    return time(hour, minute)


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in VALID_FORMATS:
        raise ConfigError(
            f"Invalid logging.format: {log_format!r}. Must be one of {', '.join(VALID_FORMATS)}."
        )
    log_root = section.get("log_root")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )


def _parse_planning(data: dict[str, Any]) -> PlanningConfig:
    section = _section(data, "planning")
    defaults = PlanningConfig()
    planning = PlanningConfig(
        day_start=_parse_hhmm(section.get("day_start", "08:00"), "planning.day_start"),
        day_end=_parse_hhmm(section.get("day_end", "20:00"), "planning.day_end"),
        step_minutes=_positive_int(section, "step_minutes", defaults.step_minutes, "planning"),
        block_minutes=_positive_int(section, "block_minutes", defaults.block_minutes, "planning"),
        block_title=str(section.get("block_title", defaults.block_title)),
    )
    if planning.day_start >= planning.day_end:
        raise ConfigError("planning.day_start must be before planning.day_end")
    return planning


def _parse_grid(data: dict[str, Any]) -> GridConfig:
    section = _section(data, "grid")
    raw_height = section.get("hour_height", 56.0)
    try:
        hour_height = float(raw_height)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid grid.hour_height: {raw_height!r}") from exc
    if hour_height <= 0:
        raise ConfigError(f"Invalid grid.hour_height: {raw_height!r}. Must be positive.")
    return GridConfig(
        hour_height=hour_height,
        snap_minutes=_positive_int(section, "snap_minutes", 15, "grid"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    sync = SyncConfig(
        interval_minutes=_positive_int(section, "interval_minutes", 10, "sync"),
        backoff_base_ms=_positive_int(section, "backoff_base_ms", DEFAULT_BASE_MS, "sync"),
        backoff_cap_ms=_positive_int(section, "backoff_cap_ms", DEFAULT_CAP_MS, "sync"),
    )
    if sync.backoff_cap_ms < sync.backoff_base_ms:
        raise ConfigError("sync.backoff_cap_ms must be at least sync.backoff_base_ms")
    return sync


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    google = GoogleConfig(
        enabled=bool(section.get("enabled", False)),
        client_id=section.get("client_id"),
        client_secret=section.get("client_secret"),
        refresh_token=section.get("refresh_token"),
        email=section.get("email"),
        plan_calendar_name=str(section.get("plan_calendar_name", DEFAULT_PLAN_CALENDAR_NAME)),
        window_past_days=_positive_int(
            section, "window_past_days", DEFAULT_WINDOW_PAST_DAYS, "google"
        ),
        window_future_days=_positive_int(
            section, "window_future_days", DEFAULT_WINDOW_FUTURE_DAYS, "google"
        ),
    )
    if google.enabled:
        missing = [
            key
            for key in ("client_id", "client_secret", "refresh_token")
            if not isinstance(getattr(google, key), str) or not getattr(google, key).strip()
        ]
        if missing:
            raise ConfigError(
                f"google.enabled requires non-empty value(s) for: {', '.join(missing)}"
            )
    return google


def parse_config(data: dict[str, Any]) -> WeekgridConfig:
    """Build a :class:`WeekgridConfig` from an already-decoded TOML document."""
    data = resolve_env_vars(data)

    server_section = _section(data, "server")
    db_section = _section(data, "database")
    db_name = str(db_section.get("name", DEFAULT_DB_NAME)).strip()
    if not db_name:
        raise ConfigError("database.name must be a non-empty string")

    return WeekgridConfig(
        logging=_parse_logging(data),
        server=ServerConfig(
            host=str(server_section.get("host", "127.0.0.1")),
            port=_positive_int(server_section, "port", 8400, "server"),
        ),
        database=DatabaseConfig(
            name=db_name,
            run_migrations=bool(db_section.get("run_migrations", True)),
        ),
        planning=_parse_planning(data),
        grid=_parse_grid(data),
        sync=_parse_sync(data),
        google=_parse_google(data),
    )


def load_config(config_path: Path) -> WeekgridConfig:
    """Load and validate a weekgrid.toml file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(data)
