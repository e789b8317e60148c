"""Tests for environment-driven settings."""

import asyncio

import pytest
from pydantic import ValidationError

from discussionboard import app as app_module
from discussionboard.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.activation_token_ttl_hours == 72
    assert settings.session_token_ttl_hours == 24
    assert settings.session_cookie_name == "session_token"
    assert settings.session_cookie_secure is False


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("SESSION_TOKEN_TTL_HOURS", "12")
    monkeypatch.setenv("SESSION_COOKIE_SECURE", "true")
    monkeypatch.setenv("APP_BASE_URL", "https://board.example.com/")
    settings = Settings.from_env()
    assert settings.session_token_ttl_hours == 12
    assert settings.session_cookie_secure is True
    assert settings.app_base_url == "https://board.example.com"


@pytest.mark.parametrize("field", ["activation_token_ttl_hours", "session_token_ttl_hours"])
def test_non_positive_ttl_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_non_positive_batch_size_rejected():
    with pytest.raises(ValidationError):
        Settings(token_sweep_batch_size=-1)


def test_settings_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("SESSION_COOKIE_NAME", "sid")
    reset_settings_cache()
    assert get_settings().session_cookie_name == "sid"


class _CountingSessions:
    def __init__(self):
        self.calls = 0

    def sweep_expired(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("store down")
        return 0


@pytest.mark.asyncio
async def test_token_sweep_loop_survives_errors_and_cancels():
    sessions = _CountingSessions()
    task = asyncio.create_task(app_module._run_token_sweep(sessions, 0.01))
    while sessions.calls < 3:
        await asyncio.sleep(0.01)
    task.cancel()
    await task
    assert task.done()
    assert sessions.calls >= 3
