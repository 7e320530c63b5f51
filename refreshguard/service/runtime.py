from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from refreshguard.config import (
    BlacklistBackend,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)
from refreshguard.logging import get_logger
from refreshguard.service.blacklist import build_blacklist
from refreshguard.service.reaper import TokenReaper
from refreshguard.service.rotation import RotationEngine
from refreshguard.service.sessions import AccessTokenIssuer, RoleLookup, SessionService
from refreshguard.storage.memory import MemoryTokenStore
from refreshguard.storage.postgres import PostgresTokenStore
from refreshguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, rotation engine, deny-list and reaper for one process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            token_store=self.settings.token_store.value,
            blacklist_backend=self.settings.blacklist_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.token_store is StoreBackend.MEMORY:
                self.store = MemoryTokenStore(
                    fs_root=self.settings.shared_fs_root,
                    lock_timeout=self.settings.storage_timeout_seconds,
                )
            else:
                self.store = PostgresTokenStore(
                    self.settings.database_url,
                    timeout=self.settings.storage_timeout_seconds,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.token_store.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | None = None
        if self.settings.blacklist_backend is BlacklistBackend.REDIS:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.storage_timeout_seconds,
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unreachable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "BLACKLIST_BACKEND=redis but Redis is unreachable; start Redis or "
                    "set BLACKLIST_BACKEND=memory for a single-process deployment."
                ) from exc
            self.cache = cache

        self.blacklist = build_blacklist(self.settings, self.cache)
        self.engine = RotationEngine.from_settings(self.store, self.settings)
        self.reaper = TokenReaper.from_settings(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            token_store=self.settings.token_store.value,
            blacklist_backend=self.settings.blacklist_backend.value,
            blacklist_failure_policy=self.settings.blacklist_failure_policy.value,
            race_loss_policy=self.settings.race_loss_policy.value,
            reaper_enabled=self.settings.reaper_enabled,
            hmac_hashing=self.settings.token_hash_secret is not None,
        )

    def session_service(self, issuer: AccessTokenIssuer, roles: RoleLookup) -> SessionService:
        return SessionService(
            self.engine,
            self.blacklist,
            issuer,
            roles,
            access_token_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
        )

    async def start(self) -> None:
        """Start background tasks: deny-list sweeper and, if enabled, the reaper."""
        await self.blacklist.start()
        if self.settings.reaper_enabled:
            await self.reaper.start()

    async def stop(self) -> None:
        await self.reaper.stop()
        await self.blacklist.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresTokenStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path once the runtime
    exists, and a locked re-check while creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
