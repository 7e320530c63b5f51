"""Background cleanup of refresh token records nobody can use any more.

A record is deleted once it is past its sliding or absolute deadline, or
once it has been revoked for longer than the grace period. Revoked records
are kept for that grace period so a replay shortly after rotation is still
recognized as reuse.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from refreshguard.config import Settings
from refreshguard.logging import get_logger
from refreshguard.storage.models import utcnow

if TYPE_CHECKING:
    from refreshguard.service.rotation import TokenStore

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 30 * 60
DEFAULT_BATCH_SIZE = 100
DEFAULT_GRACE_PERIOD = timedelta(hours=24)
DEFAULT_MAX_BATCHES_PER_RUN = 50
MAX_BACKOFF_SECONDS = 3600


class TokenReaper:
    """Periodically deletes dead refresh token records in bounded batches."""

    def __init__(
        self,
        store: "TokenStore",
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        max_batches_per_run: int = DEFAULT_MAX_BATCHES_PER_RUN,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_batches_per_run <= 0:
            raise ValueError("max_batches_per_run must be positive")
        self.store = store
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.grace_period = grace_period
        self.max_batches_per_run = max_batches_per_run
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, store: "TokenStore", settings: Settings) -> "TokenReaper":
        return cls(
            store,
            interval_seconds=settings.reaper_interval_seconds,
            batch_size=settings.reaper_batch_size,
            grace_period=settings.reaper_grace_period,
            max_batches_per_run=settings.reaper_max_batches,
        )

    async def start(self) -> None:
        """Start the background reaper."""
        if self._running:
            logger.warning("token_reaper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "token_reaper_started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
        )

    async def stop(self) -> None:
        """Stop the background reaper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_reaper_stopped")

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Delete dead records until a batch comes back short; returns the total."""
        now = now or utcnow()
        revoked_before = now - self.grace_period
        total = 0
        batches = 0
        while batches < self.max_batches_per_run:
            deleted = await asyncio.to_thread(
                self.store.delete_where,
                now=now,
                revoked_before=revoked_before,
                batch_size=self.batch_size,
            )
            total += deleted
            batches += 1
            if deleted < self.batch_size:
                break
        else:
            logger.warning(
                "token_reaper_batch_limit_reached",
                batches=batches,
                deleted=total,
            )
        logger.info("token_reaper_pass_complete", deleted=total, batches=batches)
        return total

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_reaper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "token_reaper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval_seconds)
