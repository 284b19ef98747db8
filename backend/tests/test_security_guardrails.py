import pytest

from core import config as config_module


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_secret_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    with pytest.raises(ValueError, match="default JWT secret"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)

    settings = config_module.get_settings()
    assert settings.app_env == "local"


def test_engine_settings_from_environment(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("ALLOW_ADJUST_INTO_RESERVED", "true")
    monkeypatch.setenv("CONCURRENCY_MAX_RETRIES", "7")
    monkeypatch.setenv("DEFAULT_COST_METHOD", "LIFO")

    settings = config_module.get_settings()
    assert settings.allow_adjust_into_reserved is True
    assert settings.concurrency_max_retries == 7
    assert settings.default_cost_method == "LIFO"
