"""
Name: Settings Tests

Responsibilities:
  - Environment parsing
  - Refusing to start with missing or shared token secrets
"""

from datetime import timedelta

import pytest

from config import ConfigurationError, Settings
from helpers import make_settings

pytestmark = pytest.mark.unit

ENV_KEYS = (
    "ACCESS_TOKEN_SECRET",
    "REFRESH_TOKEN_SECRET",
    "ACCESS_TOKEN_EXPIRY_MINUTES",
    "REFRESH_TOKEN_EXPIRY_DAYS",
    "COOKIE_SECURE",
    "COOKIE_SAMESITE",
    "REFRESH_COOKIE_FALLBACK",
    "MAX_BASKET_ITEMS",
    "CORS_ALLOWED_ORIGINS",
    "ADMIN_EMAILS",
    "TRUSTED_PROXY_HOPS",
    "LOG_LEVEL",
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", "access")
    monkeypatch.setenv("REFRESH_TOKEN_SECRET", "refresh")
    # Point dotenv at an empty file so a developer's .env does not leak in.
    empty_env = tmp_path / ".env"
    empty_env.write_text("")
    return monkeypatch, str(empty_env)


def test_defaults(env):
    _, env_file = env

    settings = Settings.from_env(env_file)

    assert settings.access_token_ttl == timedelta(minutes=10)
    assert settings.refresh_token_ttl == timedelta(days=7)
    assert settings.cookie_samesite == "Strict"
    assert settings.cookie_secure is True
    assert settings.refresh_cookie_fallback is True
    assert settings.max_basket_items == 50


def test_values_are_parsed(env):
    monkeypatch, env_file = env
    monkeypatch.setenv("ACCESS_TOKEN_EXPIRY_MINUTES", "5")
    monkeypatch.setenv("REFRESH_TOKEN_EXPIRY_DAYS", "30")
    monkeypatch.setenv("COOKIE_SECURE", "false")
    monkeypatch.setenv("REFRESH_COOKIE_FALLBACK", "off")
    monkeypatch.setenv("MAX_BASKET_ITEMS", "10")
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ADMIN_EMAILS", "Boss@Example.com")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env(env_file)

    assert settings.access_token_ttl == timedelta(minutes=5)
    assert settings.refresh_token_ttl == timedelta(days=30)
    assert settings.cookie_secure is False
    assert settings.refresh_cookie_fallback is False
    assert settings.max_basket_items == 10
    assert settings.cors_origins == ("https://a.example", "https://b.example")
    assert settings.admin_emails == frozenset({"boss@example.com"})
    assert settings.log_level == "DEBUG"


def test_missing_secret_is_fatal(env):
    monkeypatch, env_file = env
    monkeypatch.delenv("REFRESH_TOKEN_SECRET")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file)


def test_shared_secret_is_fatal(env):
    monkeypatch, env_file = env
    monkeypatch.setenv("REFRESH_TOKEN_SECRET", "access")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file)


def test_non_integer_value_is_fatal(env):
    monkeypatch, env_file = env
    monkeypatch.setenv("MAX_BASKET_ITEMS", "lots")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file)


@pytest.mark.parametrize(
    "overrides",
    [
        {"access_token_ttl": timedelta(0)},
        {"max_basket_items": 0},
        {"cookie_samesite": "Sometimes"},
    ],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ConfigurationError):
        make_settings(**overrides).validate()
