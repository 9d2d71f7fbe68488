"""Job pipeline schemas and the status derivation rule."""

from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field


class JobKind(str, Enum):
    """Worker roles; each processes one job at a time."""

    BUILD = "build"
    SUBMIT = "submit"
    DEPLOY = "deploy"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RESTARTABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class _JobFields(Protocol):
    status: str
    error: str | None
    completed_at: datetime | None


def derive_status(job: _JobFields) -> JobStatus:
    """Effective status of a job from its stored fields.

    - ``error`` set: failed, whatever the stored status says
    - ``completed_at`` set while stored status is pending/running: failed
    - otherwise: the stored status

    Every read path reports this value, never the raw column.
    """
    stored = JobStatus(job.status)
    if job.error:
        return JobStatus.FAILED
    if job.completed_at is not None and stored in (JobStatus.PENDING, JobStatus.RUNNING):
        return JobStatus.FAILED
    return stored


class TaskInput(BaseModel):
    """One unit of build work, usually derived from a plan ticket."""

    title: str
    description: str = ""
    external_id: str | None = None
    type: str | None = None
    category: str | None = None
    estimated_effort: int | None = None


class JobRequest(BaseModel):
    """Request to enqueue a new job."""

    kind: JobKind
    session_id: str
    project_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tasks: list[TaskInput] = Field(default_factory=list)


class TaskView(BaseModel):
    id: str
    external_id: str | None = None
    title: str
    description: str
    type: str | None = None
    category: str | None = None
    estimated_effort: int | None = None
    position: int
    status: TaskStatus
    error: str | None = None


class JobView(BaseModel):
    """Job as reported to callers; ``status`` is always the derived status."""

    id: str
    kind: JobKind
    session_id: str
    project_id: str
    status: JobStatus
    stored_status: JobStatus
    current_step: str | None = None
    start_commit: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    restart_count: int = 0
    restarted_from_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    tasks: list[TaskView] = Field(default_factory=list)
