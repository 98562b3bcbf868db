"""calsync configuration loading and validation.

Reads ``calsync.toml`` (path from the argument, ``CALSYNC_CONFIG`` or the
working directory), expands ``${VAR}`` references and returns a validated
``CalsyncConfig``. Without a file every section takes its defaults, with
credentials and store settings read from the environment.

Example::

    [calsync]
    time_zone = "Asia/Tokyo"
    fiscal_year_start_month = 4

    [calsync.google]
    client_id = "${GOOGLE_CALENDAR_CLIENT_ID}"
    client_secret = "${GOOGLE_CALENDAR_CLIENT_SECRET}"
    redirect_uri = "http://localhost:8000/api/google-calendar/oauth/callback"

    [calsync.store]
    backend = "postgres"
    database_url = "${DATABASE_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calsync.google.oauth import GOOGLE_CALENDAR_SCOPES
from calsync.mapping import DEFAULT_TIME_ZONE
from calsync.scheduler import DEFAULT_AUTO_SYNC_INTERVAL_SECONDS
from calsync.sync import DEFAULT_LEASE_TTL_SECONDS, DEFAULT_MIN_SYNC_INTERVAL_SECONDS, SyncSettings
from calsync.timekeys import DEFAULT_FISCAL_YEAR_START_MONTH

CONFIG_FILE_NAME = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

STORE_BACKENDS = ("memory", "postgres", "rest")

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """``[calsync.logging]``"""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class GoogleConfig:
    """``[calsync.google]``: OAuth client registration."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: tuple[str, ...] = GOOGLE_CALENDAR_SCOPES


@dataclass
class HttpConfig:
    """``[calsync.http]``"""

    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0

    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout_seconds, connect=self.connect_timeout_seconds)


@dataclass
class SyncConfig:
    """``[calsync.sync]``"""

    auto_sync_interval_seconds: float = DEFAULT_AUTO_SYNC_INTERVAL_SECONDS
    min_sync_interval_seconds: float = DEFAULT_MIN_SYNC_INTERVAL_SECONDS
    lease_ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS
    isolate_calendar_failures: bool = False
    checkpoint_per_calendar: bool = True
    watch_user_ids: tuple[str, ...] = ()

    def settings(self) -> SyncSettings:
        return SyncSettings(
            lease_ttl_seconds=self.lease_ttl_seconds,
            min_sync_interval_seconds=self.min_sync_interval_seconds,
            isolate_calendar_failures=self.isolate_calendar_failures,
            checkpoint_per_calendar=self.checkpoint_per_calendar,
        )


@dataclass
class StoreConfig:
    """``[calsync.store]``"""

    backend: str = "memory"
    database_url: str | None = None
    rest_project_id: str | None = None
    rest_token: str | None = None


@dataclass
class CalsyncConfig:
    time_zone: str = DEFAULT_TIME_ZONE
    fiscal_year_start_month: int = DEFAULT_FISCAL_YEAR_START_MONTH
    google: GoogleConfig = field(default_factory=GoogleConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is None:
            missing.append(match.group(1))
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return result


def _section(parent: dict[str, Any], name: str, path: str) -> dict[str, Any]:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return value


def _optional_str(section: dict[str, Any], key: str, env: str | None = None) -> str | None:
    value = section.get(key)
    if value is None and env is not None:
        value = os.environ.get(env)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be positive.")
    return value


def _bool(section: dict[str, Any], key: str, default: bool, path: str) -> bool:
    raw = section.get(key, default)
    if not isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be true or false.")
    return raw


def _string_tuple(section: dict[str, Any], key: str, path: str) -> tuple[str, ...] | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ConfigError(f"{path}.{key} must be a list of strings")
    return tuple(str(item).strip() for item in raw if isinstance(item, str) and item.strip())


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    root = _section(data, "calsync", "calsync")

    time_zone = str(root.get("time_zone", DEFAULT_TIME_ZONE))
    try:
        ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid calsync.time_zone: {time_zone!r}") from exc

    fiscal_year_start_month = root.get("fiscal_year_start_month", DEFAULT_FISCAL_YEAR_START_MONTH)
    if not isinstance(fiscal_year_start_month, int) or not 1 <= fiscal_year_start_month <= 12:
        raise ConfigError(
            f"Invalid calsync.fiscal_year_start_month: {fiscal_year_start_month!r}. "
            "Must be an integer between 1 and 12."
        )

    # --- [calsync.google] ---
    google_section = _section(root, "google", "calsync.google")
    google = GoogleConfig(
        client_id=_optional_str(google_section, "client_id", "GOOGLE_CALENDAR_CLIENT_ID"),
        client_secret=_optional_str(
            google_section, "client_secret", "GOOGLE_CALENDAR_CLIENT_SECRET"
        ),
        redirect_uri=_optional_str(
            google_section, "redirect_uri", "GOOGLE_CALENDAR_REDIRECT_URI"
        ),
        scopes=_string_tuple(google_section, "scopes", "calsync.google")
        or GOOGLE_CALENDAR_SCOPES,
    )

    # --- [calsync.http] ---
    http_section = _section(root, "http", "calsync.http")
    http = HttpConfig(
        timeout_seconds=_positive_float(http_section, "timeout_seconds", 30.0, "calsync.http"),
        connect_timeout_seconds=_positive_float(
            http_section, "connect_timeout_seconds", 10.0, "calsync.http"
        ),
    )

    # --- [calsync.sync] ---
    sync_section = _section(root, "sync", "calsync.sync")
    sync = SyncConfig(
        auto_sync_interval_seconds=_positive_float(
            sync_section,
            "auto_sync_interval_seconds",
            DEFAULT_AUTO_SYNC_INTERVAL_SECONDS,
            "calsync.sync",
        ),
        min_sync_interval_seconds=_positive_float(
            sync_section,
            "min_sync_interval_seconds",
            DEFAULT_MIN_SYNC_INTERVAL_SECONDS,
            "calsync.sync",
        ),
        lease_ttl_seconds=_positive_float(
            sync_section, "lease_ttl_seconds", DEFAULT_LEASE_TTL_SECONDS, "calsync.sync"
        ),
        isolate_calendar_failures=_bool(
            sync_section, "isolate_calendar_failures", False, "calsync.sync"
        ),
        checkpoint_per_calendar=_bool(
            sync_section, "checkpoint_per_calendar", True, "calsync.sync"
        ),
        watch_user_ids=_string_tuple(sync_section, "watch_user_ids", "calsync.sync") or (),
    )

    # --- [calsync.store] ---
    store_section = _section(root, "store", "calsync.store")
    backend = _optional_str(store_section, "backend", "CALSYNC_STORE_BACKEND") or "memory"
    backend = backend.lower()
    if backend not in STORE_BACKENDS:
        raise ConfigError(
            f"Invalid calsync.store.backend: {backend!r}. "
            f"Expected one of: {', '.join(STORE_BACKENDS)}."
        )
    store = StoreConfig(
        backend=backend,
        database_url=_optional_str(store_section, "database_url", "DATABASE_URL"),
        rest_project_id=_optional_str(
            store_section, "rest_project_id", "CALSYNC_REST_PROJECT_ID"
        ),
        rest_token=_optional_str(store_section, "rest_token", "CALSYNC_REST_TOKEN"),
    )
    if backend == "rest" and (not store.rest_project_id or not store.rest_token):
        raise ConfigError(
            "calsync.store.backend 'rest' requires rest_project_id and rest_token "
            "(or CALSYNC_REST_PROJECT_ID / CALSYNC_REST_TOKEN)"
        )

    # --- [calsync.logging] ---
    logging_section = _section(root, "logging", "calsync.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calsync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_file=_optional_str(logging_section, "log_file"),
    )

    return CalsyncConfig(
        time_zone=time_zone,
        fiscal_year_start_month=fiscal_year_start_month,
        google=google,
        http=http,
        sync=sync,
        store=store,
        logging=logging_config,
    )


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate configuration.

    Parameters
    ----------
    path:
        Explicit ``calsync.toml``. Must exist when given. Otherwise
        ``CALSYNC_CONFIG`` is consulted, then ``./calsync.toml``; when neither
        exists the defaults (plus environment fallbacks) are returned.

    Raises
    ------
    ConfigError
        If an explicit file is missing, the TOML is invalid, or a value fails
        validation.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        if env_path:
            path = Path(env_path)
        else:
            candidate = Path.cwd() / CONFIG_FILE_NAME
            if not candidate.exists():
                return parse_config({})
            path = candidate

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return parse_config(data)
