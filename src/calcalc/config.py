"""Service configuration loading and validation.

Reads an optional ``calcalc.toml`` (path from ``CALCALC_CONFIG``), resolves
``${VAR}`` references against the environment, applies environment
overrides for secrets, and returns a validated ``CalcalcConfig`` dataclass.

Example::

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    redirect_uri = "http://localhost:5000/api/google/callback"

    [scheduler]
    tick_cron = "*/15 * * * *"

    [api]
    frontend_url = "http://localhost:3000"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from croniter import croniter

from calcalc.sync.models import SyncFrequency

# Pattern matching ${VAR_NAME} — supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "calcalc.toml"
DEFAULT_TICK_CRON = "*/15 * * * *"
DEFAULT_REDIRECT_URI = "http://localhost:5000/api/google/callback"
DEFAULT_IDENTITY_HEADER = "X-Authenticated-User-Id"
GOOGLE_CALENDAR_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """OAuth client settings from [google]."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class SchedulerConfig:
    """Periodic sync trigger from [scheduler]."""

    enabled: bool = True
    tick_cron: str = DEFAULT_TICK_CRON


@dataclass
class SyncConfig:
    """Reconciliation defaults from [sync].

    The import window is unbounded unless one or both sides are configured.
    """

    initial_frequency: SyncFrequency = SyncFrequency.daily
    import_window_past: timedelta | None = None
    import_window_future: timedelta | None = None


@dataclass
class ApiConfig:
    """HTTP surface settings from [api]."""

    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    frontend_url: str | None = None
    identity_header: str = DEFAULT_IDENTITY_HEADER


@dataclass
class LoggingConfig:
    """Logging configuration from [logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CalcalcConfig:
    """Top-level service configuration."""

    google: GoogleConfig = field(default_factory=GoogleConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR_NAME}`` references in string values.

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


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_google(section: dict) -> GoogleConfig:
    client_id = os.environ.get("GOOGLE_CLIENT_ID") or section.get("client_id", "")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET") or section.get("client_secret", "")
    redirect_uri = (
        os.environ.get("GOOGLE_REDIRECT_URL")
        or section.get("redirect_uri")
        or DEFAULT_REDIRECT_URI
    )
    return GoogleConfig(
        client_id=str(client_id).strip(),
        client_secret=str(client_secret).strip(),
        redirect_uri=str(redirect_uri).strip(),
    )


def _parse_scheduler(section: dict) -> SchedulerConfig:
    tick_cron = str(section.get("tick_cron", DEFAULT_TICK_CRON)).strip()
    if not croniter.is_valid(tick_cron):
        raise ConfigError(f"Invalid scheduler.tick_cron: {tick_cron!r}")
    enabled = section.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError("scheduler.enabled must be a boolean")
    return SchedulerConfig(enabled=enabled, tick_cron=tick_cron)


def _parse_days(section: dict, key: str) -> timedelta | None:
    raw = section.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigError(f"sync.{key} must be a non-negative integer")
    return timedelta(days=raw)


def _parse_sync(section: dict) -> SyncConfig:
    raw_frequency = str(section.get("initial_frequency", SyncFrequency.daily))
    try:
        frequency = SyncFrequency(raw_frequency)
    except ValueError as exc:
        allowed = ", ".join(f.value for f in SyncFrequency)
        raise ConfigError(
            f"Invalid sync.initial_frequency: {raw_frequency!r}. Expected one of: {allowed}"
        ) from exc
    return SyncConfig(
        initial_frequency=frequency,
        import_window_past=_parse_days(section, "import_window_past_days"),
        import_window_future=_parse_days(section, "import_window_future_days"),
    )


def _parse_api(section: dict) -> ApiConfig:
    origins = section.get("cors_origins", ["http://localhost:3000"])
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",") if o.strip()]
    frontend_url = os.environ.get("FRONTEND_URL") or section.get("frontend_url")
    identity_header = str(section.get("identity_header", DEFAULT_IDENTITY_HEADER)).strip()
    if not identity_header:
        raise ConfigError("api.identity_header must be a non-empty string")
    return ApiConfig(
        cors_origins=list(origins),
        frontend_url=str(frontend_url).rstrip("/") if frontend_url else None,
        identity_header=identity_header,
    )


def _parse_logging(section: dict) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=log_format, log_root=log_root)


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


def _default_config_path() -> Path | None:
    env_path = os.environ.get("CALCALC_CONFIG", "").strip()
    if env_path:
        return Path(env_path)
    candidate = Path(DEFAULT_CONFIG_FILENAME)
    return candidate if candidate.exists() else None


def load_config(path: Path | None = None) -> CalcalcConfig:
    """Load and validate service configuration.

    Parameters
    ----------
    path:
        TOML file to read.  When omitted, ``CALCALC_CONFIG`` is consulted,
        then ``./calcalc.toml``; with neither present, defaults plus
        environment overrides are used.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path if path is not None else _default_config_path()

    data: dict = {}
    if toml_path is not None:
        if not toml_path.exists():
            raise ConfigError(f"Config file not found: {toml_path}")
        try:
            data = tomllib.loads(toml_path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    return CalcalcConfig(
        google=_parse_google(_section(data, "google")),
        scheduler=_parse_scheduler(_section(data, "scheduler")),
        sync=_parse_sync(_section(data, "sync")),
        api=_parse_api(_section(data, "api")),
        logging=_parse_logging(_section(data, "logging")),
    )
