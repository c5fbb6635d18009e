"""Tests for agenda.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from estate_agenda.config import (
    CLIENT_ID_ENV,
    CLIENT_SECRET_ENV,
    CONFIG_PATH_ENV,
    DEFAULT_TEST_DENYLIST,
    PUBLIC_HOSTNAME_ENV,
    ConfigError,
    DenylistEntry,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

FULL_TOML = """\
[agenda]
name = "agenzia-centro"
port = 9000
public_hostname = "agenda.example.com"

[agenda.logging]
level = "debug"
format = "JSON"

[database]
url = "postgres://u:p@db:5432/crm"
max_pool_size = 8

[calendar]
calendar_id = "agenzia@group.calendar.google.com"
timezone = "Europe/Rome"
request_timeout_s = 10
client_id = "cid"
client_secret = "${AGENDA_TEST_SECRET}"

[pipeline]
message_event_minutes = 45
test_denylist = ["Prova", { text = "Boni", sender = "393407992052" }]
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (CONFIG_PATH_ENV, CLIENT_ID_ENV, CLIENT_SECRET_ENV, PUBLIC_HOSTNAME_ENV):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_full_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AGENDA_TEST_SECRET", "s3cret")
        path = tmp_path / "agenda.toml"
        path.write_text(FULL_TOML)

        config = load_config(path)

        assert config.name == "agenzia-centro"
        assert config.port == 9000
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.database.url == "postgres://u:p@db:5432/crm"
        assert config.database.max_pool_size == 8
        assert config.calendar.calendar_id == "agenzia@group.calendar.google.com"
        assert config.calendar.request_timeout_s == 10.0
        assert config.calendar.client_secret == "s3cret"
        assert config.calendar.has_app_credentials
        assert config.pipeline.message_event_minutes == 45
        assert config.pipeline.confirmation_event_minutes == 30
        assert config.pipeline.test_denylist == (
            DenylistEntry("Prova"),
            DenylistEntry("Boni", sender="393407992052"),
        )
        assert config.redirect_uri == "https://agenda.example.com/api/oauth/google/callback"

    def test_missing_default_file_gives_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config.port == 8400
        assert config.calendar.timezone == "Europe/Rome"
        assert not config.calendar.has_app_credentials
        assert config.pipeline.test_denylist == DEFAULT_TEST_DENYLIST
        assert config.redirect_uri == "http://localhost:8400/api/oauth/google/callback"

    def test_explicit_missing_file_is_an_error(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_env_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "custom.toml"
        path.write_text('[agenda]\nname = "from-env"\n')
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

        assert load_config().name == "from-env"

    def test_invalid_toml(self, tmp_path: Path):
        path = tmp_path / "agenda.toml"
        path.write_text("[agenda\n")

        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_unresolved_env_var(self, tmp_path: Path):
        path = tmp_path / "agenda.toml"
        path.write_text('[calendar]\nclient_secret = "${AGENDA_UNSET_VAR_XYZ}"\n')

        with pytest.raises(ConfigError, match="AGENDA_UNSET_VAR_XYZ"):
            load_config(path)


class TestEnvironmentOverrides:
    def test_client_credentials_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv(CLIENT_ID_ENV, "env-id")
        monkeypatch.setenv(CLIENT_SECRET_ENV, "env-secret")

        calendar = parse_config({}).calendar

        assert (calendar.client_id, calendar.client_secret) == ("env-id", "env-secret")

    def test_file_value_wins_over_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv(CLIENT_ID_ENV, "env-id")
        assert parse_config({"calendar": {"client_id": "file-id"}}).calendar.client_id == "file-id"

    def test_public_hostname_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv(PUBLIC_HOSTNAME_ENV, "crm.example.it")
        assert parse_config({}).redirect_uri.startswith("https://crm.example.it/")


class TestValidation:
    @pytest.mark.parametrize(
        ("data", "match"),
        [
            ({"agenda": {"port": 0}}, "agenda.port"),
            ({"agenda": {"port": True}}, "agenda.port"),
            ({"agenda": {"logging": {"format": "xml"}}}, "agenda.logging.format"),
            ({"calendar": {"timezone": "Mars/Olympus"}}, "calendar.timezone"),
            ({"calendar": {"request_timeout_s": -1}}, "request_timeout_s"),
            ({"calendar": {"calendar_id": "  "}}, "calendar.calendar_id"),
            ({"database": {"min_pool_size": 6, "max_pool_size": 2}}, "min_pool_size"),
            ({"database": {"name": ""}}, "database.name"),
            ({"pipeline": {"message_event_minutes": 0}}, "message_event_minutes"),
            ({"pipeline": {"test_denylist": "Rossi"}}, "test_denylist"),
            ({"pipeline": {"test_denylist": [{"sender": "1"}]}}, r"test_denylist\[0\]"),
            ({"calendar": "primary"}, r"\[calendar\] must be a table"),
        ],
    )
    def test_rejects(self, data: dict, match: str):
        with pytest.raises(ConfigError, match=match):
            parse_config(data)


class TestResolveEnvVars:
    def test_nested(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AGENDA_A", "1")
        assert resolve_env_vars({"x": ["${AGENDA_A}", 2], "y": "v${AGENDA_A}"}) == {
            "x": ["1", 2],
            "y": "v1",
        }


class TestDenylistEntry:
    def test_sender_scoped(self):
        entry = DenylistEntry("Boni", sender="393407992052")
        assert entry.matches("Sig. Boni", "393407992052")
        assert not entry.matches("Sig. Boni", "393331234567")
        assert not entry.matches("Sig. Rossi", "393407992052")
