import os

import pytest

from caseload.core.settings import get_settings


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield get_settings
    get_settings.cache_clear()


def test_test_environment_defaults(fresh_settings):
    settings = fresh_settings()

    assert settings.environment == "test"
    assert settings.backend_url == ""
    assert settings.stale_after_seconds == 300.0
    assert settings.cleanup_interval_seconds == 3600.0
    assert settings.cleanup_autostart is False
    assert settings.token_cache_ttl_seconds == 300.0
    assert settings.token_session_ttl_seconds == 1800.0


def test_invalid_numbers_fall_back_to_defaults(monkeypatch, fresh_settings):
    monkeypatch.setenv("CACHE_STALE_AFTER_SECONDS", "soon")
    monkeypatch.setenv("TOKEN_CLEANUP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("BACKEND_TIMEOUT_SECONDS", "-5")

    settings = fresh_settings()

    assert settings.stale_after_seconds == 300.0
    assert settings.cleanup_interval_seconds == 3600.0
    assert settings.backend_timeout_seconds == 10.0


def test_session_ttl_is_never_shorter_than_cache_ttl(monkeypatch, fresh_settings):
    monkeypatch.setenv("TOKEN_CACHE_TTL_SECONDS", "600")
    monkeypatch.setenv("TOKEN_SESSION_TTL_SECONDS", "60")

    settings = fresh_settings()

    assert settings.token_session_ttl_seconds == 600.0


def test_backend_url_is_normalised(monkeypatch, fresh_settings):
    monkeypatch.setenv("BACKEND_URL", " https://db.example.org/ ")

    assert fresh_settings().backend_url == "https://db.example.org"


def test_unknown_environment_falls_back_to_development(monkeypatch, fresh_settings):
    monkeypatch.setenv("ENVIRONMENT", "qa")
    monkeypatch.delenv("TOKEN_CLEANUP_AUTOSTART", raising=False)

    settings = fresh_settings()

    assert settings.environment == "development"
    assert settings.cleanup_autostart is True


def test_production_requires_backend_url(monkeypatch, fresh_settings):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("BACKEND_URL", "")

    with pytest.raises(ValueError, match="BACKEND_URL"):
        fresh_settings()


def test_load_env_keeps_shell_values(tmp_path, monkeypatch):
    from caseload.core.env import load_env

    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "# caseload settings",
                "export CASELOAD_TEST_URL='https://db.example.org'",
                "CASELOAD_TEST_TTL=120 # seconds",
                "CASELOAD_TEST_SHELL=from-file",
                "not a pair",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("CASELOAD_TEST_SHELL", "from-shell")
    try:
        applied = load_env(env_file)

        assert applied == {"CASELOAD_TEST_URL": "https://db.example.org", "CASELOAD_TEST_TTL": "120"}
        assert os.environ["CASELOAD_TEST_SHELL"] == "from-shell"
    finally:
        os.environ.pop("CASELOAD_TEST_URL", None)
        os.environ.pop("CASELOAD_TEST_TTL", None)
