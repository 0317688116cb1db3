# tests/test_config.py
import pytest
from pydantic import ValidationError

from core.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    settings = Settings(_env_file=None)
    assert settings.BROWSER_MAX == 2
    assert settings.QUEUE_CONCURRENCY == 2
    assert settings.HTTP_MAX_CONCURRENT == 100
    assert settings.CACHE_STATS_TTL == 30 * 60
    assert settings.REDIS_URL is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BROWSER_MAX", "4")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("BROWSER_FALLBACK_ENABLED", "false")
    settings = Settings(_env_file=None)
    assert settings.BROWSER_MAX == 4
    assert settings.REDIS_URL == "redis://cache:6379/0"
    assert settings.BROWSER_FALLBACK_ENABLED is False


def test_rejects_invalid_pool_size(monkeypatch):
    monkeypatch.setenv("BROWSER_MAX", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
