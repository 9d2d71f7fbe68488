"""Idle sandbox cleanup: destroy running sandboxes nobody has touched recently."""

from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel

from orchestrator.core.config import Settings, get_settings
from orchestrator.db.base import utcnow
from orchestrator.sandbox.manager import SandboxManager
from orchestrator.sandbox.registry import SandboxRegistry
from orchestrator.sandbox.types import SandboxStatus

logger = structlog.get_logger(__name__)


class CleanupResult(BaseModel):
    destroyed: int = 0
    skipped: int = 0
    failed: int = 0
    reconciled: int = 0


class IdleSandboxCleaner:
    def __init__(
        self,
        manager: SandboxManager,
        registry: SandboxRegistry,
        settings: Settings | None = None,
    ):
        self.manager = manager
        self.registry = registry
        self.settings = settings or get_settings()

    async def run_once(self, now: datetime | None = None) -> CleanupResult:
        """One cleanup pass.

        Each candidate is re-read before destroying it, so a session that saw
        activity after the scan, or was destroyed concurrently, is skipped.
        A failure on one sandbox is logged and counted; the pass continues.

        Args:
            now: Injectable current time for testing
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.cleanup_threshold_minutes)
        result = CleanupResult()

        try:
            result.reconciled = await self.manager.reconcile()
        except Exception as e:
            logger.warning("cleanup_reconcile_failed", error=str(e), error_type=type(e).__name__)

        candidates = await self.registry.list_idle(cutoff)
        for candidate in candidates:
            current = await self.registry.get(candidate.session_id)
            if (
                current is None
                or current.id != candidate.id
                or current.status != SandboxStatus.RUNNING
                or (current.last_activity_at is not None and current.last_activity_at >= cutoff)
            ):
                result.skipped += 1
                continue

            try:
                await self.manager.destroy_sandbox(candidate.session_id)
            except Exception as e:
                result.failed += 1
                logger.warning(
                    "idle_sandbox_destroy_failed",
                    session_id=candidate.session_id,
                    sandbox_id=candidate.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            result.destroyed += 1
            idle_minutes = (
                round((now - current.last_activity_at).total_seconds() / 60, 1)
                if current.last_activity_at
                else None
            )
            logger.info(
                "idle_sandbox_destroyed",
                session_id=candidate.session_id,
                sandbox_id=candidate.id,
                idle_minutes=idle_minutes,
            )

        logger.info(
            "sandbox_cleanup_complete",
            candidates=len(candidates),
            destroyed=result.destroyed,
            skipped=result.skipped,
            failed=result.failed,
            reconciled=result.reconciled,
        )
        return result
