from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StoreBackend(str, Enum):
    """Where refresh token records live."""

    POSTGRES = "postgres"
    MEMORY = "memory"


class BlacklistBackend(str, Enum):
    """Backing store for the access token deny-list."""

    REDIS = "redis"
    MEMORY = "memory"


class FailurePolicy(str, Enum):
    """What a blacklist lookup answers when its cache cannot be reached.

    - FAIL_OPEN: treat the token as not blacklisted (availability first)
    - FAIL_CLOSED: treat the token as blacklisted (security first)
    """

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class RaceLossPolicy(str, Enum):
    """How a rotation that lost the compare-and-set race is handled.

    - REJECT: fail the call as reused, leave the rest of the family alone
    - REVOKE_FAMILY: treat the loss exactly like reuse and revoke the family
    """

    REJECT = "reject"
    REVOKE_FAMILY = "revoke_family"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token storage, rotation, blacklisting and reaping."""

    database_url: str = env_field(
        "postgresql://localhost:5432/refreshguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    token_store: StoreBackend = env_field(
        StoreBackend.POSTGRES,
        "TOKEN_STORE",
        description="Refresh token store: postgres or memory",
    )
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory the memory store persists its state under; unset keeps it in RAM only",
    )
    blacklist_backend: BlacklistBackend = env_field(
        BlacklistBackend.REDIS,
        "BLACKLIST_BACKEND",
        description="Access token deny-list backend: redis or memory",
    )
    blacklist_failure_policy: FailurePolicy = env_field(
        FailurePolicy.FAIL_CLOSED,
        "BLACKLIST_FAILURE_POLICY",
        description=(
            "Answer given by blacklist lookups while the cache is unreachable: "
            "fail_closed rejects every access token, fail_open accepts them"
        ),
    )
    blacklist_sweep_interval_seconds: int = env_field(
        15 * 60,
        "BLACKLIST_SWEEP_INTERVAL_SECONDS",
        description="Eviction timer for the in-memory deny-list",
    )
    race_loss_policy: RaceLossPolicy = env_field(
        RaceLossPolicy.REJECT,
        "RACE_LOSS_POLICY",
        description="Whether losing a concurrent rotation also revokes the token family",
    )
    sliding_window_days: int = env_field(30, "REFRESH_SLIDING_WINDOW_DAYS")
    absolute_window_days: int = env_field(90, "REFRESH_ABSOLUTE_WINDOW_DAYS")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Deny-list TTL used on logout when the access token expiry is unknown",
    )
    token_hash_secret: str | None = env_field(
        None,
        "TOKEN_HASH_SECRET",
        description="When set, refresh tokens are hashed with HMAC-SHA256 under this key",
    )
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")
    reaper_enabled: bool = env_field(True, "REAPER_ENABLED")
    reaper_interval_seconds: int = env_field(30 * 60, "REAPER_INTERVAL_SECONDS")
    reaper_batch_size: int = env_field(100, "REAPER_BATCH_SIZE")
    reaper_grace_period_hours: int = env_field(
        24,
        "REAPER_GRACE_PERIOD_HOURS",
        description="How long revoked records are kept so late reuse is still detected",
    )
    reaper_max_batches: int = env_field(50, "REAPER_MAX_BATCHES")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "sliding_window_days",
        "absolute_window_days",
        "access_token_ttl_minutes",
        "blacklist_sweep_interval_seconds",
        "reaper_interval_seconds",
        "reaper_batch_size",
        "reaper_max_batches",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("reaper_grace_period_hours")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("storage_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("storage timeout must be positive")
        return value

    @field_validator("token_hash_secret")
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _absolute_covers_sliding(self) -> "Settings":
        if self.absolute_window_days < self.sliding_window_days:
            raise ValueError(
                "REFRESH_ABSOLUTE_WINDOW_DAYS must not be shorter than REFRESH_SLIDING_WINDOW_DAYS"
            )
        return self

    @property
    def sliding_window(self) -> timedelta:
        return timedelta(days=self.sliding_window_days)

    @property
    def absolute_window(self) -> timedelta:
        return timedelta(days=self.absolute_window_days)

    @property
    def reaper_grace_period(self) -> timedelta:
        return timedelta(hours=self.reaper_grace_period_hours)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
