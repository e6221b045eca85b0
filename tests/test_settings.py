"""Tests for settings validation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from config.settings import Settings, get_settings, reset_settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults():
    settings = _settings()

    assert settings.cache_max_size == 10000
    assert settings.log_level == "INFO"
    assert settings.dashboard_port == 8082


def test_supabase_url_normalized():
    settings = _settings(supabase_url="https://example.supabase.co/", supabase_anon_key="anon")

    assert settings.supabase_url == "https://example.supabase.co"
    assert settings.is_datastore_configured


def test_datastore_not_configured_without_key():
    assert not _settings(supabase_url="https://example.supabase.co", supabase_anon_key=None).is_datastore_configured


def test_invalid_supabase_url():
    with pytest.raises(ValidationError):
        _settings(supabase_url="example.supabase.co")


def test_log_level_normalized():
    assert _settings(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        _settings(log_level="chatty")


def test_eviction_bounds():
    with pytest.raises(ValidationError):
        _settings(cache_cleanup_threshold=0.2, cache_eviction_fraction=0.5)


def test_store_and_sync_config():
    settings = _settings(
        cache_max_size=500,
        cache_batch_size=50,
        cache_freshness_seconds=120,
        incremental_interval_seconds=30,
    )

    store = settings.store_config()
    assert store.max_size == 500
    assert store.batch_size == 50
    assert store.freshness == timedelta(seconds=120)
    assert settings.sync_config().incremental_interval == timedelta(seconds=30)


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("CACHE_MAX_SIZE", "250")
    reset_settings()
    try:
        assert get_settings().cache_max_size == 250
        assert get_settings() is get_settings()
    finally:
        reset_settings()
