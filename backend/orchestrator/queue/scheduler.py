"""Periodic idle-sandbox cleanup.

Runs as an asyncio task next to the workers. Every tick takes a short Redis
lock so that only one process in the cluster runs a cleanup pass at a time;
a tick that finds the lock held is skipped.
"""

import asyncio

import structlog

from orchestrator.core.locking import RedisLock
from orchestrator.sandbox.cleanup import CleanupResult, IdleSandboxCleaner

logger = structlog.get_logger(__name__)

_RUN_LOCK = "cleanup:run"


class CleanupScheduler:
    """Run ``IdleSandboxCleaner`` on a fixed interval.

    Usage:
        scheduler = CleanupScheduler(cleaner, lock, interval_seconds=600)
        task = asyncio.create_task(scheduler.run())
        ...
        scheduler.stop()
    """

    def __init__(self, cleaner: IdleSandboxCleaner, lock: RedisLock, interval_seconds: float) -> None:
        self.cleaner = cleaner
        self.lock = lock
        self.interval_seconds = interval_seconds
        self._stop = asyncio.Event()

    async def run_once(self) -> CleanupResult | None:
        """One pass under the run lock; None if another process holds it."""
        ttl = max(int(self.interval_seconds), 60)
        async with self.lock.try_hold(_RUN_LOCK, ttl=ttl) as acquired:
            if not acquired:
                logger.info("sandbox_cleanup_skipped_locked")
                return None
            return await self.cleaner.run_once()

    async def run(self) -> None:
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("sandbox_cleanup_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
        logger.info("cleanup_scheduler_stopped")

    def stop(self) -> None:
        self._stop.set()
