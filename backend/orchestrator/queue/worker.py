"""Job workers: one role per job kind, each processing a single job at a time.

A worker pulls the next job id from its kind's queue, takes the cluster-wide
role semaphore, moves the job to running and hands it to ``handle``. Any
exception from ``handle`` fails the job with the error recorded; jobs are
never retried automatically.
"""

import asyncio
from collections.abc import Awaitable, Sequence
from typing import Any, TypeVar

import structlog
from sqlalchemy import update

from orchestrator.core.config import Settings
from orchestrator.core.exceptions import InconsistentJobStateError, OperationFailedError, StepTimeoutError
from orchestrator.core.logging import bound_context
from orchestrator.db.base import utcnow
from orchestrator.db.models.job import Job
from orchestrator.integrations.github import VcsHost
from orchestrator.integrations.notifier import Notifier, notify_quietly
from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.queue.manager import QueueManager
from orchestrator.queue.schemas import JobKind, JobStatus, JobView, derive_status
from orchestrator.queue.semaphore import RedisSemaphore, role_semaphore
from orchestrator.sandbox.sse import AgentEvent, EventStream

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def event_succeeded(event: AgentEvent) -> bool:
    """Whether a terminal ``done`` event reports success."""
    data = event.data if isinstance(event.data, dict) else {}
    if "success" in data:
        return bool(data["success"])
    return data.get("status", "success") == "success"


def event_error(event: AgentEvent, default: str) -> str:
    data = event.data if isinstance(event.data, dict) else {}
    return str(data.get("message") or data.get("error") or default)


class BaseWorker:
    """Worker for one job kind. Subclasses implement ``handle``."""

    kind: JobKind

    def __init__(
        self,
        coordinator: JobCoordinator,
        vcs: VcsHost | None = None,
        notifier: Notifier | None = None,
    ):
        self.coordinator = coordinator
        self.vcs = vcs
        self.notifier = notifier
        self._lease: RedisSemaphore | None = None
        self._lease_holder: str | None = None

    @property
    def settings(self) -> Settings:
        return self.coordinator.settings

    @property
    def sandboxes(self):
        return self.coordinator.sandboxes

    @property
    def state_machine(self):
        return self.coordinator.state_machine

    async def handle(self, job: JobView) -> dict[str, Any]:
        raise NotImplementedError

    async def process_next(self) -> bool:
        """Pull the next job of this kind and process it.

        Returns:
            True if a job was taken off the queue and processed, False if the
            queue was empty or the role was busy (job re-enqueued)
        """
        redis = self.coordinator.redis
        queue = QueueManager(redis, self.kind)

        job_id = await queue.dequeue()
        if job_id is None:
            return False

        semaphore = role_semaphore(redis, self.kind, ttl=max(int(self.settings.task_step_timeout), 60))
        if not await semaphore.acquire(job_id):
            await queue.enqueue(job_id)
            logger.info("job_role_busy_reenqueued", job_id=job_id, kind=self.kind.value)
            return False

        self._lease, self._lease_holder = semaphore, job_id
        try:
            await self._run(job_id)
        finally:
            self._lease, self._lease_holder = None, None
            await semaphore.release(job_id)
        return True

    async def _run(self, job_id: str) -> None:
        async with self.coordinator.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                logger.error("job_metadata_missing", job_id=job_id)
                return
            stored = JobStatus(job.status)
            derived = derive_status(job)

        if derived != stored:
            error = InconsistentJobStateError(job_id, stored.value, derived.value)
            logger.warning("job_state_inconsistent", job_id=job_id, error=str(error))
            return
        if stored != JobStatus.PENDING:
            logger.info("job_not_pending_skipped", job_id=job_id, status=stored.value)
            return

        if not await self.state_machine.transition(job_id, JobStatus.RUNNING, message="Picked up by worker"):
            logger.info("job_pickup_lost_race", job_id=job_id)
            return

        view = await self.coordinator.get_job(job_id)
        with bound_context(job_id=job_id, kind=self.kind.value, session_id=view.session_id):
            logger.info("job_started", tasks=len(view.tasks))
            try:
                # A registry row alone is not trusted; drift is marked error here
                await self.sandboxes.require_live_sandbox(view.session_id)
                result = await self.handle(view)
            except asyncio.CancelledError:
                logger.warning("job_interrupted")
                await self.state_machine.transition(job_id, JobStatus.FAILED, error="worker stopped during job")
                raise
            except Exception as exc:
                logger.error("job_failed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
                error = str(exc) or type(exc).__name__
                if await self.state_machine.transition(job_id, JobStatus.FAILED, error=error):
                    await self._notify(view, "job_failed", {"error": error})
                else:
                    logger.info("job_failure_discarded")
                return

            if await self.state_machine.transition(job_id, JobStatus.COMPLETED, result=result, message="Completed"):
                logger.info("job_completed")
                await self._notify(view, "job_completed", result)
            else:
                # Cancelled while the last step was finishing
                logger.info("job_completion_discarded")

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    async def step(self, name: str, awaitable: Awaitable[T], timeout: float) -> T:
        """Run one step bounded by ``timeout``; expiry fails the step."""
        timer = asyncio.timeout(timeout)
        try:
            async with timer:
                return await awaitable
        except TimeoutError as e:
            if timer.expired():
                raise StepTimeoutError(name, timeout) from e
            raise

    async def heartbeat(self) -> None:
        """Extend the role lease; call between steps of a long job."""
        if self._lease is not None:
            await self._lease.heartbeat(self._lease_holder)

    async def credential(self, job: JobView) -> str | None:
        """Short-lived VCS token for the job's installation, if any."""
        installation_id = job.payload.get("installation_id")
        if self.vcs is None or not installation_id:
            return None
        return await self.vcs.get_installation_token(str(installation_id))

    async def consume(self, stream: EventStream, on_event=None, failure: str = "operation failed") -> AgentEvent | None:
        """Drain an agent stream; ``error`` or an unsuccessful ``done`` raises.

        Returns:
            The terminal ``done`` event, or None if the stream ended on the
            ``[DONE]`` sentinel alone
        """
        async with stream:
            async for event in stream:
                if on_event is not None:
                    await on_event(event)
                if event.type == "error":
                    raise OperationFailedError(event_error(event, failure))
                if event.type == "done":
                    if not event_succeeded(event):
                        raise OperationFailedError(event_error(event, failure))
                    return event
        return None

    async def record_start_commit(self, job_id: str, commit: str) -> None:
        async with self.coordinator.session_factory() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(start_commit=commit, updated_at=utcnow())
            )
            await session.commit()

    async def _notify(self, job: JobView, template: str, data: dict[str, Any]) -> None:
        await notify_quietly(
            self.notifier,
            job.payload.get("notify"),
            f"{self.kind.value}_{template}",
            {"job_id": job.id, "session_id": job.session_id, "project_id": job.project_id, **data},
        )


class WorkerPool:
    """Runs each worker role as its own asyncio task."""

    def __init__(self, workers: Sequence[BaseWorker], poll_interval: float = 2.0):
        self.workers = list(workers)
        self.poll_interval = poll_interval
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    async def _loop(self, worker: BaseWorker) -> None:
        logger.info("worker_started", kind=worker.kind.value)
        while not self._stopping.is_set():
            try:
                processed = await worker.process_next()
            except Exception as e:
                logger.error("worker_iteration_failed", kind=worker.kind.value, error=str(e), exc_info=True)
                processed = False
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
        logger.info("worker_stopped", kind=worker.kind.value)

    def start(self) -> None:
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._loop(worker)) for worker in self.workers]

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def run_forever(self) -> None:
        self.start()
        await asyncio.gather(*self._tasks, return_exceptions=True)
