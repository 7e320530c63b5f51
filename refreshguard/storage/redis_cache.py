from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

DENYLIST_PREFIX = "auth:access:denylist:"


class RedisCache:
    """Thin Redis wrapper for the access token deny-list."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, token_hash: str, ttl_seconds: int) -> None:
        """Add an access token hash to the deny-list; Redis evicts it after the TTL."""
        if ttl_seconds > 0:
            await self.client.set(f"{DENYLIST_PREFIX}{token_hash}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, token_hash: str) -> bool:
        return bool(await self.client.exists(f"{DENYLIST_PREFIX}{token_hash}"))

    async def remove_denylisted_token(self, token_hash: str) -> None:
        await self.client.delete(f"{DENYLIST_PREFIX}{token_hash}")

    async def clear_denylist(self, *, batch_size: int = 500) -> int:
        removed = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=f"{DENYLIST_PREFIX}*", count=batch_size):
            batch.append(key)
            if len(batch) >= batch_size:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def count_denylisted(self, *, batch_size: int = 500) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=f"{DENYLIST_PREFIX}*", count=batch_size):
            count += 1
        return count

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
