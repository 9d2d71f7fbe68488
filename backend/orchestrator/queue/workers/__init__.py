"""Worker roles, one per job kind."""

from orchestrator.queue.workers.build import BuildWorker
from orchestrator.queue.workers.deploy import DeployWorker
from orchestrator.queue.workers.submit import SubmitWorker

__all__ = ["BuildWorker", "DeployWorker", "SubmitWorker"]
