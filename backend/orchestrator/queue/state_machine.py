"""Job state machine over the ``jobs`` table, with Redis event publishing."""

import json
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.asyncio import Redis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.db.models.job import Job
from orchestrator.queue.schemas import TERMINAL_STATUSES, JobStatus

logger = structlog.get_logger(__name__)


class JobEventType:
    """Event type constants for the job:{id}:events Pub/Sub channel."""

    STATUS_CHANGED = "job.status.changed"
    STEP_STARTED = "job.step.started"
    TASK_UPDATED = "job.task.updated"


def events_channel(job_id: str) -> str:
    return f"job:{job_id}:events"


class JobStateMachine:
    """Validated status transitions.

    Each transition is a single conditional UPDATE on (id, expected status),
    so a worker finishing a job that was cancelled meanwhile loses the race
    instead of overwriting the cancellation.
    """

    TRANSITIONS = {
        JobStatus.PENDING: [JobStatus.RUNNING, JobStatus.CANCELLED],
        JobStatus.RUNNING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED],
        JobStatus.COMPLETED: [],
        JobStatus.FAILED: [],
        JobStatus.CANCELLED: [],
    }

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], redis: Redis):
        self.session_factory = session_factory
        self.redis = redis

    async def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
        message: str = "",
        now: datetime | None = None,
    ) -> bool:
        """Move a job to ``new_status`` if allowed from its stored status.

        Args:
            job_id: Job identifier
            new_status: Target status
            error: Failure detail, recorded when moving to FAILED
            result: Result payload, recorded when given
            message: Optional human-readable message for the event
            now: Current time (for deterministic testing)

        Returns:
            True if the transition was applied, False if invalid, lost a race,
            or the job does not exist
        """
        now = now or datetime.now(UTC)

        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return False
            current = JobStatus(job.status)
            if new_status not in self.TRANSITIONS.get(current, []):
                return False

            values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
            if new_status == JobStatus.RUNNING:
                values["started_at"] = now
            if new_status in TERMINAL_STATUSES:
                values["completed_at"] = now
            if new_status == JobStatus.FAILED:
                values["error"] = error or "unknown error"
            if result is not None:
                values["result"] = result

            updated = await session.execute(
                update(Job).where(Job.id == job_id, Job.status == current.value).values(**values)
            )
            await session.commit()
            if updated.rowcount == 0:
                return False

        logger.info("job_transition", job_id=job_id, from_status=current.value, to_status=new_status.value)
        await self.publish_event(
            job_id,
            {
                "type": JobEventType.STATUS_CHANGED,
                "status": new_status.value,
                "previous_status": current.value,
                "message": message or (error or ""),
                "timestamp": now.isoformat(),
            },
        )
        return True

    async def set_step(self, job_id: str, step: str) -> bool:
        """Record the current step of a running job."""
        async with self.session_factory() as session:
            updated = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
                .values(current_step=step, updated_at=datetime.now(UTC))
            )
            await session.commit()
        if updated.rowcount == 0:
            return False
        await self.publish_event(job_id, {"type": JobEventType.STEP_STARTED, "step": step})
        return True

    async def publish_event(self, job_id: str, event: dict) -> None:
        """Publish a typed event on the job's channel.

        Publishing is best-effort; a Redis hiccup must not fail the job.
        """
        if "timestamp" not in event:
            event["timestamp"] = datetime.now(UTC).isoformat()
        event["job_id"] = job_id
        try:
            await self.redis.publish(events_channel(job_id), json.dumps(event))
        except Exception as e:
            logger.warning("job_event_publish_failed", job_id=job_id, error=str(e))
