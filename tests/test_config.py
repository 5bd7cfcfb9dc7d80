"""Configuration loading and validation."""

import pytest

import config
from config import (
    Config,
    ConfigurationError,
    get_total_tolerance,
    is_development,
    is_metrics_enabled,
)


@pytest.fixture
def supabase_env(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "secret-key")
    monkeypatch.delenv("SUPABASE_TIMEOUT", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


def test_defaults(supabase_env):
    cfg = Config()

    assert cfg.supabase.timeout == 10
    assert cfg.checkout.order_number_prefix == "ORD"
    assert cfg.checkout.total_tolerance == 1
    assert cfg.checkout.payment_method == "toss_payments"
    assert cfg.checkout.products_per_page == 12
    assert cfg.runtime.environment == "development"
    assert cfg.runtime.metrics_enabled is True


def test_missing_supabase_url(supabase_env, monkeypatch):
    monkeypatch.delenv("SUPABASE_URL")

    with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
        Config()


def test_insecure_supabase_url(supabase_env, monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "http://project.supabase.co")

    with pytest.raises(ConfigurationError):
        Config()


@pytest.mark.parametrize("key, value", [
    ("ORDER_TOTAL_TOLERANCE", "-1"),
    ("ORDER_TOTAL_TOLERANCE", "one"),
    ("PRODUCTS_PER_PAGE", "0"),
    ("APP_ENV", "qa"),
    ("LOG_LEVEL", "LOUD"),
    ("SUPABASE_TIMEOUT", "0"),
])
def test_invalid_values(supabase_env, monkeypatch, key, value):
    monkeypatch.setenv(key, value)

    with pytest.raises(ConfigurationError):
        Config()


def test_safe_summary_has_no_secrets(supabase_env):
    summary = Config().get_safe_summary()

    assert "secret-key" not in str(summary)
    assert summary["checkout"]["total_tolerance"] == 1


def test_getters_work_without_supabase(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("METRICS_ENABLED", "false")
    monkeypatch.setenv("ORDER_TOTAL_TOLERANCE", "5")

    assert is_development() is False
    assert is_metrics_enabled() is False
    assert get_total_tolerance() == 5


def test_get_config_is_cached(supabase_env, monkeypatch):
    monkeypatch.setattr(config, "_config", None)

    assert config.get_config() is config.get_config()


def test_configure_logging_rejects_bad_level():
    with pytest.raises(ConfigurationError):
        config.configure_logging("NOISY")
