"""Tests for calsync.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from calsync.config import (
    CONFIG_PATH_ENV,
    CalsyncConfig,
    ConfigError,
    HttpConfig,
    SyncConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)
from calsync.google.oauth import GOOGLE_CALENDAR_SCOPES

pytestmark = pytest.mark.unit

_ENV_FALLBACKS = (
    "GOOGLE_CALENDAR_CLIENT_ID",
    "GOOGLE_CALENDAR_CLIENT_SECRET",
    "GOOGLE_CALENDAR_REDIRECT_URI",
    "CALSYNC_STORE_BACKEND",
    "DATABASE_URL",
    "CALSYNC_REST_PROJECT_ID",
    "CALSYNC_REST_TOKEN",
    CONFIG_PATH_ENV,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_FALLBACKS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, content: str, name: str = "calsync.toml") -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# Defaults and environment fallbacks
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_empty_document(self):
        config = parse_config({})

        assert config == CalsyncConfig()
        assert config.time_zone == "Asia/Tokyo"
        assert config.fiscal_year_start_month == 4
        assert config.store.backend == "memory"
        assert config.google.client_id is None
        assert config.google.scopes == GOOGLE_CALENDAR_SCOPES
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"
        assert config.sync.checkpoint_per_calendar is True
        assert config.sync.isolate_calendar_failures is False

    def test_env_fallbacks(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "env-client")
        monkeypatch.setenv("GOOGLE_CALENDAR_REDIRECT_URI", "https://app.example.com/cb")
        monkeypatch.setenv("CALSYNC_STORE_BACKEND", "Postgres")
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/calsync")

        config = parse_config({})

        assert config.google.client_id == "env-client"
        assert config.google.redirect_uri == "https://app.example.com/cb"
        assert config.store.backend == "postgres"
        assert config.store.database_url == "postgres://u:p@db:5432/calsync"

    def test_file_values_win_over_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "env-client")

        config = parse_config({"calsync": {"google": {"client_id": "file-client"}}})

        assert config.google.client_id == "file-client"

    def test_blank_strings_are_unset(self):
        config = parse_config({"calsync": {"google": {"client_secret": "   "}}})

        assert config.google.client_secret is None


# ---------------------------------------------------------------------------
# ${VAR} resolution
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("CALSYNC_TEST_SECRET", "s3cret")

        resolved = resolve_env_vars(
            {"a": "${CALSYNC_TEST_SECRET}", "b": ["x-${CALSYNC_TEST_SECRET}"], "c": 3}
        )

        assert resolved == {"a": "s3cret", "b": ["x-s3cret"], "c": 3}

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("CALSYNC_TEST_MISSING", raising=False)

        with pytest.raises(ConfigError, match="CALSYNC_TEST_MISSING"):
            resolve_env_vars("${CALSYNC_TEST_MISSING}")

    def test_parse_resolves_before_validation(self, monkeypatch):
        monkeypatch.setenv("CALSYNC_TEST_CLIENT", "from-env")

        config = parse_config({"calsync": {"google": {"client_id": "${CALSYNC_TEST_CLIENT}"}}})

        assert config.google.client_id == "from-env"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_unknown_time_zone(self):
        with pytest.raises(ConfigError, match="time_zone"):
            parse_config({"calsync": {"time_zone": "Mars/Olympus_Mons"}})

    @pytest.mark.parametrize("month", [0, 13, "4", 4.0])
    def test_fiscal_year_start_month(self, month):
        with pytest.raises(ConfigError, match="fiscal_year_start_month"):
            parse_config({"calsync": {"fiscal_year_start_month": month}})

    def test_unknown_backend(self):
        with pytest.raises(ConfigError, match="backend"):
            parse_config({"calsync": {"store": {"backend": "sqlite"}}})

    def test_rest_backend_requires_credentials(self):
        with pytest.raises(ConfigError, match="rest_project_id"):
            parse_config({"calsync": {"store": {"backend": "rest", "rest_token": "t"}}})

    def test_rest_backend_with_env_credentials(self, monkeypatch):
        monkeypatch.setenv("CALSYNC_REST_PROJECT_ID", "proj")
        monkeypatch.setenv("CALSYNC_REST_TOKEN", "tok")

        config = parse_config({"calsync": {"store": {"backend": "rest"}}})

        assert config.store.rest_project_id == "proj"
        assert config.store.rest_token == "tok"

    def test_log_format(self):
        with pytest.raises(ConfigError, match="format"):
            parse_config({"calsync": {"logging": {"format": "xml"}}})

    def test_log_level_is_uppercased(self):
        config = parse_config({"calsync": {"logging": {"level": "debug", "format": "JSON"}}})

        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    @pytest.mark.parametrize(
        ("value", "message"), [(0, "Must be positive"), ("soon", "Must be a number")]
    )
    def test_positive_numbers(self, value, message):
        with pytest.raises(ConfigError, match=message):
            parse_config({"calsync": {"sync": {"lease_ttl_seconds": value}}})

    def test_flags_must_be_booleans(self):
        with pytest.raises(ConfigError, match="isolate_calendar_failures"):
            parse_config({"calsync": {"sync": {"isolate_calendar_failures": "yes"}}})

    def test_section_must_be_a_table(self):
        with pytest.raises(ConfigError, match="calsync.sync"):
            parse_config({"calsync": {"sync": "fast"}})

    def test_watch_user_ids_drop_blanks(self):
        config = parse_config({"calsync": {"sync": {"watch_user_ids": ["u1", " ", "u2"]}}})

        assert config.sync.watch_user_ids == ("u1", "u2")


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_explicit_path(self, tmp_path):
        path = _write(
            tmp_path,
            '[calsync]\ntime_zone = "UTC"\n\n[calsync.sync]\nmin_sync_interval_seconds = 60\n',
        )

        config = load_config(path)

        assert config.time_zone == "UTC"
        assert config.sync.min_sync_interval_seconds == 60.0

    def test_env_path(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "[calsync]\nfiscal_year_start_month = 1\n", "custom.toml")
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

        assert load_config().fiscal_year_start_month == 1

    def test_working_directory_file(self, tmp_path, monkeypatch):
        _write(tmp_path, '[calsync.google]\nclient_id = "cwd-client"\n')
        monkeypatch.chdir(tmp_path)

        assert load_config().google.client_id == "cwd-client"

    def test_no_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert load_config() == CalsyncConfig()

    def test_invalid_toml(self, tmp_path):
        path = _write(tmp_path, "[calsync\n")

        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)


# ---------------------------------------------------------------------------
# Derived settings
# ---------------------------------------------------------------------------


class TestDerivedSettings:
    def test_sync_settings(self):
        settings = SyncConfig(
            lease_ttl_seconds=30,
            min_sync_interval_seconds=60,
            isolate_calendar_failures=True,
            checkpoint_per_calendar=False,
        ).settings()

        assert settings.lease_ttl_seconds == 30
        assert settings.min_sync_interval_seconds == 60
        assert settings.isolate_calendar_failures is True
        assert settings.checkpoint_per_calendar is False

    def test_http_timeout(self):
        timeout = HttpConfig(timeout_seconds=5, connect_timeout_seconds=2).timeout()

        assert isinstance(timeout, httpx.Timeout)
        assert timeout.read == 5
        assert timeout.connect == 2
