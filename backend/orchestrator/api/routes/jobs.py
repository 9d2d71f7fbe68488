"""Job pipeline API routes."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from orchestrator.api.deps import get_coordinator
from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.queue.schemas import JobKind, JobRequest, JobView

router = APIRouter()


class JobActionRequest(BaseModel):
    """Optional VCS credential used to revert the sandbox to the job's start commit."""

    credential: str | None = None


@router.post("", status_code=201, response_model=JobView)
async def enqueue_job(request: JobRequest, coordinator: JobCoordinator = Depends(get_coordinator)):
    """Persist and queue a job.

    Raises:
        409: a build is already active for the session
    """
    return await coordinator.enqueue(
        request.kind,
        request.session_id,
        request.project_id,
        payload=request.payload,
        tasks=request.tasks,
    )


@router.get("", response_model=list[JobView])
async def list_jobs(
    session_id: str,
    kind: JobKind | None = None,
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    return await coordinator.list_session_jobs(session_id, kind)


@router.get("/{job_id}", response_model=JobView)
async def get_job(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)):
    """Job with its derived status and ordered tasks."""
    return await coordinator.get_job(job_id)


@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(
    job_id: str,
    body: JobActionRequest | None = None,
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    return await coordinator.cancel(job_id, credential=body.credential if body else None)


@router.post("/{job_id}/restart", status_code=201, response_model=JobView)
async def restart_job(
    job_id: str,
    body: JobActionRequest | None = None,
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    """Restart a failed or cancelled job; returns the new job."""
    return await coordinator.restart(job_id, credential=body.credential if body else None)
