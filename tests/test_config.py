"""
Tests for environment parsing and service wiring.
"""
import pytest

from edulure_sync import config
from edulure_sync.config import LocalConfig, ProductionConfig, TestingConfig, get_config
from edulure_sync.db_config import normalize_database_url
from edulure_sync.errors import ConfigurationError
from edulure_sync.services import build_hubspot_client, build_salesforce_client


# ==============================================================================
# ENVIRONMENT PARSING
# ==============================================================================

class TestEnvParsing:

    @pytest.mark.parametrize("raw, expected", [("true", True), ("1", True), ("YES", True),
                                               ("false", False), ("0", False), ("", True)])
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("EDULURE_TEST_FLAG", raw)
        assert config._env_bool("EDULURE_TEST_FLAG", True) is expected

    def test_env_int_falls_back_on_garbage(self, monkeypatch):
        monkeypatch.setenv("EDULURE_TEST_INT", "lots")
        assert config._env_int("EDULURE_TEST_INT", 25) == 25

    def test_env_int_clamps(self, monkeypatch):
        monkeypatch.setenv("EDULURE_TEST_INT", "2")
        assert config._env_int("EDULURE_TEST_INT", 60, minimum=5) == 5
        monkeypatch.setenv("EDULURE_TEST_INT", "500")
        assert config._env_int("EDULURE_TEST_INT", 7, minimum=1, maximum=90) == 90

    def test_env_int_accepts_floats(self, monkeypatch):
        monkeypatch.setenv("EDULURE_TEST_INT", "12.9")
        assert config._env_int("EDULURE_TEST_INT", 1) == 12

    @pytest.mark.parametrize("raw, expected", [("0", 90), ("-5", 90), ("45", 45), ("5000", 1440)])
    def test_window_minutes(self, monkeypatch, raw, expected):
        monkeypatch.setenv("EDULURE_TEST_WINDOW", raw)
        assert config._window_minutes("EDULURE_TEST_WINDOW", 90) == expected

    @pytest.mark.parametrize("env, expected", [("testing", TestingConfig), ("prod", ProductionConfig),
                                               ("dev", LocalConfig), ("unknown", LocalConfig)])
    def test_get_config(self, monkeypatch, env, expected):
        monkeypatch.delenv("FLASK_ENV", raising=False)
        monkeypatch.setenv("ENVIRONMENT", env)
        assert get_config() is expected

    def test_normalize_database_url(self):
        assert normalize_database_url("postgres://u@h/db") == "postgresql://u@h/db"
        assert normalize_database_url("sqlite:///x.db") == "sqlite:///x.db"


# ==============================================================================
# CLIENT WIRING
# ==============================================================================

class TestClientWiring:

    def test_disabled_integrations_build_no_client(self):
        assert build_hubspot_client({"HUBSPOT_ENABLED": False}) is None
        assert build_salesforce_client({"SALESFORCE_ENABLED": False}) is None

    def test_enabled_hubspot_without_token_is_fatal(self, app):
        settings = dict(app.config, HUBSPOT_ENABLED=True, HUBSPOT_PRIVATE_APP_TOKEN=None)
        with pytest.raises(ConfigurationError):
            build_hubspot_client(settings)

    def test_enabled_hubspot_builds_client(self, app):
        settings = dict(app.config, HUBSPOT_ENABLED=True, HUBSPOT_PRIVATE_APP_TOKEN="pat")
        client = build_hubspot_client(settings)
        assert client.provider == "hubspot"
