"""JobCoordinator: enqueue, inspect, cancel and restart pipeline jobs.

Job rows live in the database; Redis holds only the per-kind pending queues
and the event channels. Reported job status is always ``derive_status``.
"""

from collections.abc import Sequence
from typing import Any

import structlog
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.core.config import Settings, get_settings
from orchestrator.core.exceptions import (
    InvalidJobTransitionError,
    NotFoundError,
    OperationFailedError,
    RestartLimitExceededError,
    SandboxUnavailableError,
)
from orchestrator.core.locking import LockTimeoutError, RedisLock
from orchestrator.db.base import as_utc
from orchestrator.db.models.job import Job
from orchestrator.db.models.task import Task
from orchestrator.queue.manager import QueueManager
from orchestrator.queue.schemas import (
    RESTARTABLE_STATUSES,
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    JobView,
    TaskInput,
    TaskStatus,
    TaskView,
    derive_status,
)
from orchestrator.queue.state_machine import JobStateMachine
from orchestrator.sandbox.manager import SandboxManager

logger = structlog.get_logger(__name__)


def task_view(task: Task) -> TaskView:
    return TaskView(
        id=task.id,
        external_id=task.external_id,
        title=task.title,
        description=task.description or "",
        type=task.type,
        category=task.category,
        estimated_effort=task.estimated_effort,
        position=task.position,
        status=TaskStatus(task.status),
        error=task.error,
    )


def job_view(job: Job, tasks: Sequence[Task] = ()) -> JobView:
    return JobView(
        id=job.id,
        kind=JobKind(job.kind),
        session_id=job.session_id,
        project_id=job.project_id,
        status=derive_status(job),
        stored_status=JobStatus(job.status),
        current_step=job.current_step,
        start_commit=job.start_commit,
        payload=job.payload or {},
        result=job.result,
        error=job.error,
        restart_count=job.restart_count or 0,
        restarted_from_id=job.restarted_from_id,
        created_at=as_utc(job.created_at),
        started_at=as_utc(job.started_at),
        completed_at=as_utc(job.completed_at),
        tasks=[task_view(t) for t in sorted(tasks, key=lambda t: t.position)],
    )


class JobCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        sandboxes: SandboxManager,
        settings: Settings | None = None,
        lock: RedisLock | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.sandboxes = sandboxes
        self.settings = settings or get_settings()
        self.lock = lock or RedisLock(redis)
        self.state_machine = JobStateMachine(session_factory, redis)

    def queue(self, kind: JobKind) -> QueueManager:
        return QueueManager(self.redis, kind)

    async def _load(self, session: AsyncSession, job_id: str) -> tuple[Job, list[Task]]:
        job = await session.get(Job, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        result = await session.execute(select(Task).where(Task.job_id == job_id).order_by(Task.position))
        return job, list(result.scalars())

    # ------------------------------------------------------------------
    # Enqueue / read
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        kind: JobKind,
        session_id: str,
        project_id: str,
        payload: dict[str, Any] | None = None,
        tasks: Sequence[TaskInput] = (),
        *,
        start_commit: str | None = None,
        restarted_from_id: str | None = None,
        restart_count: int = 0,
    ) -> JobView:
        """Persist a pending job (and its ordered tasks) and queue it.

        Build enqueues for one session are serialized so the active-build
        check and the insert cannot interleave.

        Raises:
            InvalidJobTransitionError: a build is already active for the session
        """
        values = {
            "payload": payload,
            "tasks": tasks,
            "start_commit": start_commit,
            "restarted_from_id": restarted_from_id,
            "restart_count": restart_count,
        }
        if kind != JobKind.BUILD:
            return await self._insert(kind, session_id, project_id, **values)

        try:
            async with self.lock.hold(f"jobs:enqueue:{session_id}", wait_timeout=self.settings.create_lock_wait):
                if await self.has_active_job(session_id, kind):
                    raise InvalidJobTransitionError(f"A build is already active for session {session_id}")
                return await self._insert(kind, session_id, project_id, **values)
        except LockTimeoutError as e:
            raise InvalidJobTransitionError(f"A build enqueue is already in progress for session {session_id}") from e

    async def _insert(
        self,
        kind: JobKind,
        session_id: str,
        project_id: str,
        *,
        payload: dict[str, Any] | None,
        tasks: Sequence[TaskInput],
        start_commit: str | None,
        restarted_from_id: str | None,
        restart_count: int,
    ) -> JobView:
        async with self.session_factory() as session:
            job = Job(
                session_id=session_id,
                project_id=project_id,
                kind=kind.value,
                status=JobStatus.PENDING.value,
                payload=payload or {},
                start_commit=start_commit,
                restarted_from_id=restarted_from_id,
                restart_count=restart_count,
            )
            session.add(job)
            await session.flush()

            rows = [
                Task(
                    job_id=job.id,
                    position=position,
                    title=task.title,
                    description=task.description,
                    external_id=task.external_id,
                    type=task.type,
                    category=task.category,
                    estimated_effort=task.estimated_effort,
                    status=TaskStatus.TODO.value,
                )
                for position, task in enumerate(tasks)
            ]
            session.add_all(rows)
            await session.commit()
            view = job_view(job, rows)

        position = await self.queue(kind).enqueue(view.id)
        logger.info(
            "job_enqueued",
            job_id=view.id,
            kind=kind.value,
            session_id=session_id,
            tasks=len(view.tasks),
            position=position,
            restarted_from_id=restarted_from_id,
        )
        return view

    async def get_job(self, job_id: str) -> JobView:
        async with self.session_factory() as session:
            job, tasks = await self._load(session, job_id)
            return job_view(job, tasks)

    async def list_session_jobs(self, session_id: str, kind: JobKind | None = None) -> list[JobView]:
        query = select(Job).where(Job.session_id == session_id)
        if kind is not None:
            query = query.where(Job.kind == kind.value)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(Job.created_at.desc()))
            return [job_view(job) for job in result.scalars()]

    async def has_active_job(self, session_id: str, kind: JobKind) -> bool:
        """True if a pending or running job of ``kind`` exists for the session."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job).where(
                    Job.session_id == session_id,
                    Job.kind == kind.value,
                    Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
                )
            )
            return any(
                derive_status(job) in (JobStatus.PENDING, JobStatus.RUNNING) for job in result.scalars()
            )

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str, credential: str | None = None) -> JobView:
        """Cancel a pending or running job.

        A running build is asked to stop inside the sandbox, and with a
        credential the sandbox is reverted to the job's start commit. Both are
        best-effort; the cancellation itself stands either way.

        Raises:
            NotFoundError: unknown job
            InvalidJobTransitionError: the job is already terminal
        """
        async with self.session_factory() as session:
            job, _ = await self._load(session, job_id)
            derived = derive_status(job)
            kind = JobKind(job.kind)

        if derived in TERMINAL_STATUSES:
            raise InvalidJobTransitionError(f"Job {job_id} is already {derived.value}")

        await self.queue(kind).remove(job_id)
        if not await self.state_machine.transition(job_id, JobStatus.CANCELLED, message="Cancelled"):
            current = await self.get_job(job_id)
            raise InvalidJobTransitionError(f"Job {job_id} is already {current.status.value}")

        await self._cancel_open_tasks(job_id)

        if derived == JobStatus.RUNNING:
            client = self.sandboxes.client(job.session_id)
            await client.cancel_build(job_id)
            if credential and job.start_commit:
                try:
                    result = await client.revert(job.start_commit, credential)
                except SandboxUnavailableError as e:
                    logger.warning("cancel_revert_skipped", job_id=job_id, error=str(e))
                else:
                    if not result.success:
                        logger.warning("cancel_revert_failed", job_id=job_id, error=result.error)

        logger.info("job_cancelled", job_id=job_id, previous_status=derived.value)
        return await self.get_job(job_id)

    async def _cancel_open_tasks(self, job_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Task).where(
                    Task.job_id == job_id,
                    Task.status.in_([TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value]),
                )
            )
            for task in result.scalars():
                task.status = TaskStatus.CANCELLED.value
            await session.commit()

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    async def restart(self, job_id: str, credential: str | None = None) -> JobView:
        """Restart a failed or cancelled job from its start commit.

        Creates a new job that inherits the ordered task list (all reset to
        todo) and ``start_commit``, reverts the sandbox to that commit, then
        queues the new job. The old job is left untouched as history.

        Raises:
            NotFoundError: unknown job
            InvalidJobTransitionError: job is not failed/cancelled, or was already restarted
            RestartLimitExceededError: the restart chain is exhausted
            SandboxUnavailableError: the session has no running sandbox
            OperationFailedError: the revert failed
        """
        try:
            async with self.lock.hold(f"jobs:restart:{job_id}", wait_timeout=self.settings.create_lock_wait):
                return await self._restart(job_id, credential)
        except LockTimeoutError as e:
            raise InvalidJobTransitionError(f"A restart of job {job_id} is already in progress") from e

    async def _restart(self, job_id: str, credential: str | None) -> JobView:
        async with self.session_factory() as session:
            job, tasks = await self._load(session, job_id)
            successor = await session.scalar(select(Job.id).where(Job.restarted_from_id == job_id).limit(1))

        derived = derive_status(job)
        if derived not in RESTARTABLE_STATUSES:
            raise InvalidJobTransitionError(f"Only failed or cancelled jobs can be restarted (job is {derived.value})")
        if successor is not None:
            raise InvalidJobTransitionError(f"Job {job_id} was already restarted as {successor}")

        restart_count = job.restart_count or 0
        if restart_count >= self.settings.job_max_restarts:
            raise RestartLimitExceededError(job_id, restart_count)

        if job.start_commit:
            await self.sandboxes.require_live_sandbox(job.session_id)
            result = await self.sandboxes.client(job.session_id).revert(job.start_commit, credential)
            if not result.success:
                raise OperationFailedError(
                    f"Failed to revert to {job.start_commit[:7]}: {result.error or 'unknown error'}"
                )
        else:
            logger.warning("job_restart_without_checkpoint", job_id=job_id)

        inherited = [
            TaskInput(
                title=task.title,
                description=task.description or "",
                external_id=task.external_id,
                type=task.type,
                category=task.category,
                estimated_effort=task.estimated_effort,
            )
            for task in tasks
        ]

        new_job = await self.enqueue(
            JobKind(job.kind),
            job.session_id,
            job.project_id,
            payload=job.payload,
            tasks=inherited,
            start_commit=job.start_commit,
            restarted_from_id=job.id,
            restart_count=restart_count + 1,
        )
        logger.info(
            "job_restarted",
            job_id=job_id,
            new_job_id=new_job.id,
            start_commit=job.start_commit,
            restart_count=restart_count + 1,
        )
        return new_job
