"""Build worker: executes a job's tasks in stored order inside the sandbox."""

from typing import Any

import structlog
from sqlalchemy import update

from orchestrator.db.base import utcnow
from orchestrator.db.models.task import Task
from orchestrator.queue.schemas import JobKind, JobView, TaskStatus, TaskView
from orchestrator.queue.state_machine import JobEventType
from orchestrator.queue.worker import BaseWorker
from orchestrator.sandbox.client import SandboxClient

logger = structlog.get_logger(__name__)


class BuildWorker(BaseWorker):
    kind = JobKind.BUILD

    async def handle(self, job: JobView) -> dict[str, Any]:
        client = self.sandboxes.client(job.session_id)
        credential = await self.credential(job)

        if job.start_commit is None:
            commit = await self.step("checkpoint", client.get_head_commit(), self.settings.git_op_timeout)
            await self.record_start_commit(job.id, commit)
            logger.info("build_checkpoint_recorded", start_commit=commit)

        completed = 0
        for task in job.tasks:
            if task.status == TaskStatus.DONE:
                continue
            await self.heartbeat()
            if not await self.state_machine.set_step(job.id, task.title):
                logger.info("build_stopped_job_not_running", job_id=job.id, next_task=task.id)
                break
            if not await self._set_task(job.id, task, TaskStatus.IN_PROGRESS):
                break
            try:
                await self.step(
                    task.title,
                    self._run_task(client, job, task, credential),
                    self.settings.task_step_timeout,
                )
            except Exception as exc:
                await self._set_task(job.id, task, TaskStatus.ERROR, error=str(exc) or type(exc).__name__)
                raise
            if not await self._set_task(job.id, task, TaskStatus.DONE):
                break
            completed += 1
            logger.info("build_task_done", task_id=task.id, position=task.position)

        # A successful build does not advance to submit on its own.
        return {"tasks_completed": completed, "tasks_total": len(job.tasks)}

    async def _run_task(self, client: SandboxClient, job: JobView, task: TaskView, credential: str | None) -> None:
        stream = await client.stream_build_task(
            job.id,
            {
                "id": task.external_id or task.id,
                "title": task.title,
                "description": task.description,
                "type": task.type,
                "category": task.category,
            },
            credential,
        )
        await self.consume(stream, failure=f"Task '{task.title}' failed")

    async def _set_task(self, job_id: str, task: TaskView, status: TaskStatus, error: str | None = None) -> bool:
        """Write a task status unless the task was cancelled underneath us."""
        async with self.coordinator.session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task.id, Task.status != TaskStatus.CANCELLED.value)
                .values(status=status.value, error=error, updated_at=utcnow())
            )
            await session.commit()
        if result.rowcount == 0:
            logger.info("task_update_skipped_cancelled", task_id=task.id, status=status.value)
            return False
        await self.state_machine.publish_event(
            job_id,
            {"type": JobEventType.TASK_UPDATED, "task_id": task.id, "status": status.value, "error": error},
        )
        return True
