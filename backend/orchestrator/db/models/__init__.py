"""Re-export all models so Base.metadata sees them."""

from orchestrator.db.models.job import Job
from orchestrator.db.models.sandbox import SandboxRecord
from orchestrator.db.models.task import Task

__all__ = [
    "Job",
    "SandboxRecord",
    "Task",
]
