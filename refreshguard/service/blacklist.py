"""Access token deny-list.

Two interchangeable backends sit behind :class:`AccessTokenBlacklist`:
Redis, where key TTLs do the eviction, and an in-process map swept by a
background task. :func:`build_blacklist` picks one at startup.

When Redis cannot be reached the configured :class:`FailurePolicy` decides
what a lookup answers. Administrative calls (``clear``/``count``) always
raise, since no authorization decision depends on them.
"""

from __future__ import annotations

import abc
import asyncio
import math
import threading
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from redis.exceptions import RedisError

from refreshguard.config import BlacklistBackend, FailurePolicy, Settings
from refreshguard.logging import get_logger
from refreshguard.service.errors import StorageUnavailableError
from refreshguard.storage.models import ensure_utc, utcnow
from refreshguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_SWEEP_INTERVAL_SECONDS = 15 * 60


class AccessTokenBlacklist(abc.ABC):
    """Deny-list keyed by access token hash with automatic expiry."""

    @abc.abstractmethod
    async def blacklist(self, token_hash: str, ttl_seconds: float) -> None:
        """Deny ``token_hash`` for ``ttl_seconds``; a non-positive TTL is a no-op."""

    async def blacklist_until(
        self, token_hash: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> None:
        """Deny a token for the rest of its natural lifetime."""
        now = now or utcnow()
        remaining = (ensure_utc(expires_at) - now).total_seconds()
        if remaining <= 0:
            logger.debug("access_token_already_expired", expires_at=expires_at.isoformat())
            return
        await self.blacklist(token_hash, math.ceil(remaining))

    @abc.abstractmethod
    async def is_blacklisted(self, token_hash: str) -> bool: ...

    @abc.abstractmethod
    async def remove(self, token_hash: str) -> None: ...

    @abc.abstractmethod
    async def clear(self) -> int: ...

    @abc.abstractmethod
    async def count(self) -> int: ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class RedisAccessTokenBlacklist(AccessTokenBlacklist):
    def __init__(
        self,
        cache: RedisCache,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
        timeout: float = 5.0,
    ) -> None:
        self.cache = cache
        self.failure_policy = failure_policy
        self.timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StorageUnavailableError(
                "access token blacklist unavailable", detail={"operation": operation}
            ) from exc

    async def blacklist(self, token_hash: str, ttl_seconds: float) -> None:
        if not token_hash:
            raise ValueError("token_hash is required")
        if ttl_seconds <= 0:
            return
        try:
            await self._call(
                "blacklist",
                self.cache.denylist_access_token(token_hash, math.ceil(ttl_seconds)),
            )
        except StorageUnavailableError as exc:
            if self.failure_policy is FailurePolicy.FAIL_CLOSED:
                raise
            logger.error(
                "access_token_blacklist_write_failed",
                policy=self.failure_policy.value,
                error=str(exc.__cause__),
            )

    async def is_blacklisted(self, token_hash: str) -> bool:
        if not token_hash:
            return False
        try:
            return await self._call(
                "is_blacklisted", self.cache.is_access_token_denylisted(token_hash)
            )
        except StorageUnavailableError as exc:
            denied = self.failure_policy is FailurePolicy.FAIL_CLOSED
            logger.warning(
                "access_token_blacklist_unreachable",
                policy=self.failure_policy.value,
                denied=denied,
                error=str(exc.__cause__),
            )
            return denied

    async def remove(self, token_hash: str) -> None:
        try:
            await self._call("remove", self.cache.remove_denylisted_token(token_hash))
        except StorageUnavailableError as exc:
            if self.failure_policy is FailurePolicy.FAIL_CLOSED:
                raise
            logger.error(
                "access_token_blacklist_remove_failed",
                policy=self.failure_policy.value,
                error=str(exc.__cause__),
            )

    async def clear(self) -> int:
        return await self._call("clear", self.cache.clear_denylist())

    async def count(self) -> int:
        return await self._call("count", self.cache.count_denylisted())


class InMemoryAccessTokenBlacklist(AccessTokenBlacklist):
    """Process-local deny-list.

    Entries past their deadline are ignored on lookup and dropped by
    :meth:`sweep`, which the background task runs every
    ``sweep_interval`` seconds so the map does not grow without bound.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._deadlines: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    async def blacklist(self, token_hash: str, ttl_seconds: float) -> None:
        if not token_hash:
            raise ValueError("token_hash is required")
        if ttl_seconds <= 0:
            return
        deadline = self.clock() + ttl_seconds
        with self._lock:
            # Re-blacklisting never shortens an existing entry
            self._deadlines[token_hash] = max(deadline, self._deadlines.get(token_hash, 0.0))

    async def is_blacklisted(self, token_hash: str) -> bool:
        with self._lock:
            deadline = self._deadlines.get(token_hash)
            if deadline is None:
                return False
            if deadline <= self.clock():
                del self._deadlines[token_hash]
                return False
            return True

    async def remove(self, token_hash: str) -> None:
        with self._lock:
            self._deadlines.pop(token_hash, None)

    async def clear(self) -> int:
        with self._lock:
            removed = len(self._deadlines)
            self._deadlines.clear()
        return removed

    async def count(self) -> int:
        now = self.clock()
        with self._lock:
            return sum(1 for deadline in self._deadlines.values() if deadline > now)

    def sweep(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [h for h, deadline in self._deadlines.items() if deadline <= now]
            for token_hash in expired:
                del self._deadlines[token_hash]
        if expired:
            logger.debug("access_token_blacklist_swept", removed=len(expired))
        return len(expired)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("access_token_blacklist_sweep_failed", error=str(exc))


def build_blacklist(
    settings: Settings, cache: Optional[RedisCache] = None
) -> AccessTokenBlacklist:
    """Select the deny-list backend once, from configuration."""
    if settings.blacklist_backend is BlacklistBackend.REDIS:
        if cache is None:
            raise RuntimeError("BLACKLIST_BACKEND=redis requires a Redis cache")
        backend: AccessTokenBlacklist = RedisAccessTokenBlacklist(
            cache,
            failure_policy=settings.blacklist_failure_policy,
            timeout=settings.storage_timeout_seconds,
        )
    else:
        backend = InMemoryAccessTokenBlacklist(
            sweep_interval=settings.blacklist_sweep_interval_seconds
        )
    logger.info(
        "access_token_blacklist_configured",
        backend=settings.blacklist_backend.value,
        failure_policy=settings.blacklist_failure_policy.value,
    )
    if settings.blacklist_failure_policy is FailurePolicy.FAIL_OPEN:
        logger.warning(
            "access_token_blacklist_fail_open",
            detail="blacklisted access tokens are accepted while the cache is unreachable",
        )
    return backend
