import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from refreshguard.config import BlacklistBackend, FailurePolicy, Settings
from refreshguard.service.blacklist import (
    InMemoryAccessTokenBlacklist,
    RedisAccessTokenBlacklist,
    build_blacklist,
)
from refreshguard.service.errors import StorageUnavailableError
from refreshguard.storage.redis_cache import DENYLIST_PREFIX, RedisCache


class MonotonicClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class FakeAsyncRedis:
    """Minimal async stand-in for the redis.asyncio client."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def exists(self, key):
        return int(key in self.data)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        prefix = (match or "").rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key


class BrokenAsyncRedis:
    async def set(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def exists(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def delete(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def scan_iter(self, match=None, count=None):
        raise RedisConnectionError("connection refused")
        yield  # pragma: no cover


class SlowAsyncRedis(FakeAsyncRedis):
    async def exists(self, key):
        await asyncio.sleep(1)
        return 0


def make_cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.socket_timeout = 1.0
    cache.client = client
    return cache


class TestInMemoryBlacklist:
    async def test_ttl_expires_without_cleanup(self):
        clock = MonotonicClock()
        blacklist = InMemoryAccessTokenBlacklist(clock=clock)
        await blacklist.blacklist("hash-a", 5)

        assert await blacklist.is_blacklisted("hash-a") is True
        clock.value += 4.9
        assert await blacklist.is_blacklisted("hash-a") is True
        clock.value += 1.1
        assert await blacklist.is_blacklisted("hash-a") is False

    async def test_remove_clear_and_count(self):
        clock = MonotonicClock()
        blacklist = InMemoryAccessTokenBlacklist(clock=clock)
        await blacklist.blacklist("a", 60)
        await blacklist.blacklist("b", 60)
        await blacklist.blacklist("c", 1)

        clock.value += 2
        assert await blacklist.count() == 2
        await blacklist.remove("a")
        assert await blacklist.is_blacklisted("a") is False
        assert await blacklist.clear() == 2
        assert await blacklist.count() == 0

    async def test_non_positive_ttl_is_ignored(self):
        blacklist = InMemoryAccessTokenBlacklist()
        await blacklist.blacklist("a", 0)
        assert await blacklist.is_blacklisted("a") is False

    async def test_sweep_drops_expired_entries(self):
        clock = MonotonicClock()
        blacklist = InMemoryAccessTokenBlacklist(clock=clock)
        await blacklist.blacklist("short", 1)
        await blacklist.blacklist("long", 100)
        clock.value += 5

        assert blacklist.sweep() == 1
        assert "short" not in blacklist._deadlines
        assert "long" in blacklist._deadlines

    async def test_background_sweeper_evicts(self):
        blacklist = InMemoryAccessTokenBlacklist(sweep_interval=0.02)
        await blacklist.blacklist("a", 0.05)
        await blacklist.start()
        try:
            await asyncio.sleep(0.2)
            assert "a" not in blacklist._deadlines
        finally:
            await blacklist.stop()

    async def test_blacklist_until_uses_remaining_lifetime(self):
        clock = MonotonicClock()
        blacklist = InMemoryAccessTokenBlacklist(clock=clock)
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await blacklist.blacklist_until("live", now + timedelta(seconds=30), now=now)
        await blacklist.blacklist_until("dead", now - timedelta(seconds=1), now=now)

        assert await blacklist.is_blacklisted("live") is True
        assert await blacklist.is_blacklisted("dead") is False
        clock.value += 31
        assert await blacklist.is_blacklisted("live") is False


class TestRedisBlacklist:
    async def test_set_uses_prefixed_key_and_ttl(self):
        client = FakeAsyncRedis()
        blacklist = RedisAccessTokenBlacklist(make_cache(client))

        await blacklist.blacklist("hash-a", 5)

        assert client.ttls[f"{DENYLIST_PREFIX}hash-a"] == 5
        assert await blacklist.is_blacklisted("hash-a") is True
        assert await blacklist.count() == 1
        await blacklist.remove("hash-a")
        assert await blacklist.is_blacklisted("hash-a") is False

    async def test_clear_only_touches_denylist_keys(self):
        client = FakeAsyncRedis()
        client.data["auth:session:other"] = "1"
        blacklist = RedisAccessTokenBlacklist(make_cache(client))
        await blacklist.blacklist("a", 10)
        await blacklist.blacklist("b", 10)

        assert await blacklist.clear() == 2
        assert "auth:session:other" in client.data

    async def test_fail_closed_denies_and_raises_on_write(self):
        blacklist = RedisAccessTokenBlacklist(
            make_cache(BrokenAsyncRedis()), failure_policy=FailurePolicy.FAIL_CLOSED
        )
        assert await blacklist.is_blacklisted("hash-a") is True
        with pytest.raises(StorageUnavailableError):
            await blacklist.blacklist("hash-a", 10)
        with pytest.raises(StorageUnavailableError):
            await blacklist.remove("hash-a")

    async def test_fail_open_allows_and_swallows_writes(self):
        blacklist = RedisAccessTokenBlacklist(
            make_cache(BrokenAsyncRedis()), failure_policy=FailurePolicy.FAIL_OPEN
        )
        assert await blacklist.is_blacklisted("hash-a") is False
        await blacklist.blacklist("hash-a", 10)
        await blacklist.remove("hash-a")

    async def test_admin_calls_always_raise_when_unreachable(self):
        blacklist = RedisAccessTokenBlacklist(
            make_cache(BrokenAsyncRedis()), failure_policy=FailurePolicy.FAIL_OPEN
        )
        with pytest.raises(StorageUnavailableError):
            await blacklist.count()
        with pytest.raises(StorageUnavailableError):
            await blacklist.clear()

    async def test_slow_cache_hits_timeout(self):
        blacklist = RedisAccessTokenBlacklist(
            make_cache(SlowAsyncRedis()),
            failure_policy=FailurePolicy.FAIL_CLOSED,
            timeout=0.05,
        )
        assert await blacklist.is_blacklisted("hash-a") is True


def test_build_blacklist_selects_memory_backend():
    settings = Settings(blacklist_backend=BlacklistBackend.MEMORY, blacklist_sweep_interval_seconds=60)
    backend = build_blacklist(settings)
    assert isinstance(backend, InMemoryAccessTokenBlacklist)
    assert backend.sweep_interval == 60


def test_build_blacklist_selects_redis_backend_with_policy():
    settings = Settings(
        blacklist_backend=BlacklistBackend.REDIS,
        blacklist_failure_policy=FailurePolicy.FAIL_OPEN,
        storage_timeout_seconds=0.5,
    )
    backend = build_blacklist(settings, make_cache(FakeAsyncRedis()))
    assert isinstance(backend, RedisAccessTokenBlacklist)
    assert backend.failure_policy is FailurePolicy.FAIL_OPEN
    assert backend.timeout == 0.5


def test_build_blacklist_requires_cache_for_redis():
    with pytest.raises(RuntimeError):
        build_blacklist(Settings(blacklist_backend=BlacklistBackend.REDIS))
