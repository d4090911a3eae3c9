"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
and returns a validated :class:`CalsyncConfig` dataclass. Every section is
optional; a missing file can be replaced by :func:`default_config`.

Example::

    [sync]
    default_window_past_days = 365
    default_window_future_days = 365
    run_timeout_seconds = 120

    [http]
    timeout_seconds = 30

    [poller]
    enabled = true
    interval_minutes = 15
    users = ["user-1"]

    [database]
    url = "${DATABASE_URL}"

    [logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV_VAR = "CALSYNC_CONFIG"


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Reconciliation defaults from the [sync] section.

    The default window spans ``default_window_past_days`` before now to
    ``default_window_future_days`` after now and is used whenever a caller
    supplies neither a window nor a target date.
    """

    default_window_past_days: int = 365
    default_window_future_days: int = 365
    run_timeout_seconds: float | None = 120.0
    initial_sync_timeout_seconds: float | None = 60.0


@dataclass
class HttpConfig:
    """CalDAV HTTP client settings from the [http] section."""

    timeout_seconds: float = 30.0
    user_agent: str = "calsync/0.1"


@dataclass
class PollerConfig:
    """Background poller settings from the [poller] section.

    After a pass whose only failures were transient network errors, the
    next pass for that user is delayed by ``retry_base_seconds`` doubled per
    consecutive failure, capped at ``max_backoff_seconds``.
    """

    enabled: bool = False
    interval_minutes: int = 15
    retry_base_seconds: float = 60.0
    max_backoff_seconds: float = 3600.0
    users: list[str] = field(default_factory=list)


@dataclass
class DatabaseConfig:
    """asyncpg connection settings from the [database] section."""

    url: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class CredentialsConfig:
    """Credential cipher settings from the [credentials] section.

    ``cipher`` names a zero-argument factory as ``"package.module:attribute"``
    returning an object with ``encrypt``/``decrypt`` methods.
    """

    cipher: str | None = None


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)


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
            return match.group(0)  # keep placeholder for error reporting
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
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_negative_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must not be negative.")
    return value


def _optional_seconds(
    section: dict[str, Any], key: str, default: float | None, path: str
) -> float | None:
    if key not in section:
        return default
    raw = section[key]
    if raw is None or raw == 0:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number of seconds.") from exc
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must not be negative.")
    return value


def _positive_seconds(section: dict[str, Any], key: str, default: float, path: str) -> float:
    value = _optional_seconds(section, key, default, path)
    if value is None:
        raise ConfigError(f"Invalid {path}.{key}: must be a positive number of seconds.")
    return value


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    past = _non_negative_int(section, "default_window_past_days", 365, "sync")
    future = _non_negative_int(section, "default_window_future_days", 365, "sync")
    if past + future == 0:
        raise ConfigError("sync.default_window_past_days and future_days cannot both be 0")
    return SyncConfig(
        default_window_past_days=past,
        default_window_future_days=future,
        run_timeout_seconds=_optional_seconds(section, "run_timeout_seconds", 120.0, "sync"),
        initial_sync_timeout_seconds=_optional_seconds(
            section, "initial_sync_timeout_seconds", 60.0, "sync"
        ),
    )


def _parse_http(data: dict[str, Any]) -> HttpConfig:
    section = _section(data, "http")
    user_agent = section.get("user_agent", HttpConfig.user_agent)
    if not isinstance(user_agent, str) or not user_agent.strip():
        raise ConfigError("http.user_agent must be a non-empty string")
    return HttpConfig(
        timeout_seconds=_positive_seconds(section, "timeout_seconds", 30.0, "http"),
        user_agent=user_agent.strip(),
    )


def _parse_poller(data: dict[str, Any]) -> PollerConfig:
    section = _section(data, "poller")
    raw_users = section.get("users", [])
    if not isinstance(raw_users, list) or not all(isinstance(u, str) for u in raw_users):
        raise ConfigError("poller.users must be a list of strings")
    users = [u.strip() for u in raw_users if u.strip()]

    retry_base = _positive_seconds(section, "retry_base_seconds", 60.0, "poller")
    max_backoff = _positive_seconds(section, "max_backoff_seconds", 3600.0, "poller")
    if max_backoff < retry_base:
        raise ConfigError("poller.max_backoff_seconds must be >= poller.retry_base_seconds")

    return PollerConfig(
        enabled=bool(section.get("enabled", False)),
        interval_minutes=_positive_int(section, "interval_minutes", 15, "poller"),
        retry_base_seconds=retry_base,
        max_backoff_seconds=max_backoff,
        users=users,
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    url = section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("database.url must be a non-empty string when set")
    min_size = _positive_int(section, "min_pool_size", 1, "database")
    max_size = _positive_int(section, "max_pool_size", 5, "database")
    if max_size < min_size:
        raise ConfigError("database.max_pool_size must be >= database.min_pool_size")
    return DatabaseConfig(
        url=url.strip() if isinstance(url, str) else None,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_credentials(data: dict[str, Any]) -> CredentialsConfig:
    section = _section(data, "credentials")
    cipher = section.get("cipher")
    if cipher is None:
        return CredentialsConfig()
    if not isinstance(cipher, str) or ":" not in cipher:
        raise ConfigError(
            f"Invalid credentials.cipher: {cipher!r}. Expected 'package.module:attribute'."
        )
    return CredentialsConfig(cipher=cipher.strip())


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        sync=_parse_sync(data),
        http=_parse_http(data),
        poller=_parse_poller(data),
        database=_parse_database(data),
        logging=_parse_logging(data),
        credentials=_parse_credentials(data),
    )


def default_config() -> CalsyncConfig:
    """Configuration used when no file is present."""
    return CalsyncConfig()


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    Parameters
    ----------
    path:
        Config file or a directory containing ``calsync.toml``. When omitted,
        ``$CALSYNC_CONFIG`` is used, then ``./calsync.toml``; a missing default
        file yields :func:`default_config`.

    Raises
    ------
    ConfigError
        If an explicitly named file is missing, contains invalid TOML, or
        holds invalid values.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_PATH_ENV_VAR))
    toml_path = Path(path or os.environ.get(CONFIG_PATH_ENV_VAR) or DEFAULT_CONFIG_FILENAME)
    if toml_path.is_dir():
        toml_path = toml_path / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return default_config()

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
