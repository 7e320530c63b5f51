from datetime import timedelta

import pytest
from pydantic import ValidationError

from refreshguard.config import (
    BlacklistBackend,
    FailurePolicy,
    RaceLossPolicy,
    Settings,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)


def test_defaults_match_documented_windows():
    settings = Settings()
    assert settings.sliding_window == timedelta(days=30)
    assert settings.absolute_window == timedelta(days=90)
    assert settings.reaper_grace_period == timedelta(hours=24)
    assert settings.blacklist_failure_policy is FailurePolicy.FAIL_CLOSED
    assert settings.race_loss_policy is RaceLossPolicy.REJECT


def test_from_env_reads_declared_variables(monkeypatch):
    monkeypatch.setenv("REFRESH_SLIDING_WINDOW_DAYS", "7")
    monkeypatch.setenv("REFRESH_ABSOLUTE_WINDOW_DAYS", "14")
    monkeypatch.setenv("BLACKLIST_FAILURE_POLICY", "fail_open")
    monkeypatch.setenv("RACE_LOSS_POLICY", "revoke_family")
    monkeypatch.setenv("TOKEN_STORE", "memory")
    monkeypatch.setenv("BLACKLIST_BACKEND", "redis")

    settings = Settings.from_env()

    assert settings.sliding_window_days == 7
    assert settings.absolute_window_days == 14
    assert settings.blacklist_failure_policy is FailurePolicy.FAIL_OPEN
    assert settings.race_loss_policy is RaceLossPolicy.REVOKE_FAMILY
    assert settings.token_store is StoreBackend.MEMORY
    assert settings.blacklist_backend is BlacklistBackend.REDIS


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("REAPER_BATCH_SIZE", raising=False)
    (tmp_path / ".env").write_text("REAPER_BATCH_SIZE=25\n")

    assert Settings.from_env().reaper_batch_size == 25


def test_absolute_window_must_cover_sliding_window():
    with pytest.raises(ValidationError):
        Settings(sliding_window_days=30, absolute_window_days=10)


@pytest.mark.parametrize(
    "field", ["reaper_batch_size", "access_token_ttl_minutes", "sliding_window_days"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_blank_hash_secret_is_unset():
    assert Settings(token_hash_secret="").token_hash_secret is None


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("REAPER_MAX_BATCHES", "3")
    reset_settings_cache()
    assert get_settings().reaper_max_batches == 3
