"""Agenda configuration loading and validation.

Reads ``agenda.toml`` (path from the argument, ``ESTATE_AGENDA_CONFIG``, or the
current directory), resolves ``${VAR}`` references, applies environment
overrides for secrets, and returns a validated :class:`AgendaConfig`.

A missing config file is not an error: every field has a default and the
OAuth client credentials / database URL can come from the environment alone.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_PATH_ENV = "ESTATE_AGENDA_CONFIG"
DEFAULT_CONFIG_FILENAME = "agenda.toml"

CLIENT_ID_ENV = "GOOGLE_CALENDAR_CLIENT_ID"
CLIENT_SECRET_ENV = "GOOGLE_CALENDAR_CLIENT_SECRET"
PUBLIC_HOSTNAME_ENV = "ESTATE_AGENDA_PUBLIC_HOSTNAME"

DEFAULT_PORT = 8400
DEFAULT_TIMEZONE = "Europe/Rome"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_TOKEN_SERVICE = "google_calendar"

# Matches ${VAR_NAME} references (alphanumerics and underscore).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when agenda configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [agenda.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from [database].

    ``url`` wins when set; otherwise :func:`estate_agenda.db.db_params_from_env`
    reads ``DATABASE_URL`` / ``POSTGRES_*``.
    """

    url: str | None = None
    name: str = "estate_agenda"
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class CalendarConfig:
    """External calendar settings from [calendar]."""

    calendar_id: str = DEFAULT_CALENDAR_ID
    timezone: str = DEFAULT_TIMEZONE
    request_timeout_s: float = 30.0
    client_id: str | None = None
    client_secret: str | None = None
    token_service: str = DEFAULT_TOKEN_SERVICE

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def has_app_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class DenylistEntry:
    """A known test-fixture marker; ``sender`` narrows the match to one sender."""

    text: str
    sender: str | None = None

    def matches(self, text: str, sender: str | None) -> bool:
        if self.text not in text:
            return False
        return self.sender is None or self.sender == sender


DEFAULT_TEST_DENYLIST: tuple[DenylistEntry, ...] = (
    DenylistEntry("TestSalutation"),
    DenylistEntry("TestCalendar"),
    DenylistEntry("TestOrario"),
    DenylistEntry("Paganelli"),
    DenylistEntry("Erba"),
    DenylistEntry("ceruti"),
    DenylistEntry("Boni", sender="393407992052"),
)


@dataclass
class PipelineConfig:
    """Confirmation pipeline tuning from [pipeline]."""

    message_event_minutes: int = 60
    confirmation_event_minutes: int = 30
    past_date_rollover_days: int = 30
    test_denylist: tuple[DenylistEntry, ...] = DEFAULT_TEST_DENYLIST


@dataclass
class AgendaConfig:
    """Parsed and validated agenda configuration."""

    name: str = "estate-agenda"
    port: int = DEFAULT_PORT
    public_hostname: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @property
    def redirect_uri(self) -> str:
        """OAuth callback URL derived from the public hostname."""
        if self.public_hostname:
            return f"https://{self.public_hostname}/api/oauth/google/callback"
        return f"http://localhost:{self.port}/api/oauth/google/callback"


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values."""
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
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"{where}.{key} must be a positive integer, got {raw!r}")
    return raw


def _optional_str(section: dict[str, Any], key: str, *, where: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{where}.{key} must be a string")
    return raw.strip() or None


def _parse_logging(agenda_section: dict[str, Any]) -> LoggingConfig:
    raw = agenda_section.get("logging", {})
    if not isinstance(raw, dict):
        raise ConfigError("[agenda.logging] must be a table")
    level = str(raw.get("level", "INFO")).upper()
    fmt = str(raw.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"agenda.logging.format must be 'text' or 'json', got {fmt!r}")
    return LoggingConfig(
        level=level,
        format=fmt,
        log_root=_optional_str(raw, "log_root", where="agenda.logging"),
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    name = str(section.get("name", "estate_agenda")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    min_size = _positive_int(section, "min_pool_size", 1, where="database")
    max_size = _positive_int(section, "max_pool_size", 5, where="database")
    if min_size > max_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        url=_optional_str(section, "url", where="database"),
        name=name,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_calendar(data: dict[str, Any]) -> CalendarConfig:
    section = _section(data, "calendar")
    timezone = str(section.get("timezone", DEFAULT_TIMEZONE)).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"calendar.timezone is not a valid IANA zone: {timezone!r}") from exc

    timeout = section.get("request_timeout_s", 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError(f"calendar.request_timeout_s must be a positive number, got {timeout!r}")

    calendar_id = str(section.get("calendar_id", DEFAULT_CALENDAR_ID)).strip()
    if not calendar_id:
        raise ConfigError("calendar.calendar_id must be a non-empty string")

    client_id = _optional_str(section, "client_id", where="calendar") or (
        os.environ.get(CLIENT_ID_ENV, "").strip() or None
    )
    client_secret = _optional_str(section, "client_secret", where="calendar") or (
        os.environ.get(CLIENT_SECRET_ENV, "").strip() or None
    )

    return CalendarConfig(
        calendar_id=calendar_id,
        timezone=timezone,
        request_timeout_s=float(timeout),
        client_id=client_id,
        client_secret=client_secret,
        token_service=str(section.get("token_service", DEFAULT_TOKEN_SERVICE)).strip()
        or DEFAULT_TOKEN_SERVICE,
    )


def _parse_denylist(raw: Any) -> tuple[DenylistEntry, ...]:
    if raw is None:
        return DEFAULT_TEST_DENYLIST
    if not isinstance(raw, list):
        raise ConfigError("pipeline.test_denylist must be an array")
    entries: list[DenylistEntry] = []
    for index, item in enumerate(raw):
        if isinstance(item, str):
            text, sender = item, None
        elif isinstance(item, dict):
            text, sender = item.get("text"), item.get("sender")
        else:
            raise ConfigError(f"pipeline.test_denylist[{index}] must be a string or a table")
        if not isinstance(text, str) or not text:
            raise ConfigError(f"pipeline.test_denylist[{index}].text must be a non-empty string")
        if sender is not None and not isinstance(sender, str):
            raise ConfigError(f"pipeline.test_denylist[{index}].sender must be a string")
        entries.append(DenylistEntry(text=text, sender=sender))
    return tuple(entries)


def _parse_pipeline(data: dict[str, Any]) -> PipelineConfig:
    section = _section(data, "pipeline")
    return PipelineConfig(
        message_event_minutes=_positive_int(
            section, "message_event_minutes", 60, where="pipeline"
        ),
        confirmation_event_minutes=_positive_int(
            section, "confirmation_event_minutes", 30, where="pipeline"
        ),
        past_date_rollover_days=_positive_int(
            section, "past_date_rollover_days", 30, where="pipeline"
        ),
        test_denylist=_parse_denylist(section.get("test_denylist")),
    )


def _resolve_config_path(path: Path | None) -> tuple[Path, bool]:
    """Return the config path and whether it was explicitly requested."""
    if path is not None:
        return path, True
    env_path = os.environ.get(CONFIG_PATH_ENV, "").strip()
    if env_path:
        return Path(env_path), True
    return Path.cwd() / DEFAULT_CONFIG_FILENAME, False


def parse_config(data: dict[str, Any]) -> AgendaConfig:
    """Validate an already-decoded TOML mapping into an :class:`AgendaConfig`."""
    data = resolve_env_vars(data)

    agenda_section = _section(data, "agenda")
    port = agenda_section.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"agenda.port must be a valid TCP port, got {port!r}")

    public_hostname = _optional_str(agenda_section, "public_hostname", where="agenda") or (
        os.environ.get(PUBLIC_HOSTNAME_ENV, "").strip() or None
    )

    return AgendaConfig(
        name=str(agenda_section.get("name", "estate-agenda")),
        port=port,
        public_hostname=public_hostname,
        logging=_parse_logging(agenda_section),
        database=_parse_database(data),
        calendar=_parse_calendar(data),
        pipeline=_parse_pipeline(data),
    )


def load_config(path: Path | None = None) -> AgendaConfig:
    """Load and validate agenda configuration.

    Parameters
    ----------
    path:
        Explicit TOML path. Defaults to ``$ESTATE_AGENDA_CONFIG`` or
        ``./agenda.toml``; a missing ``./agenda.toml`` yields an all-defaults
        config.

    Raises
    ------
    ConfigError
        If an explicit file is missing, the TOML is invalid, or a value fails
        validation.
    """
    toml_path, explicit = _resolve_config_path(path)

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return parse_config({})

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
