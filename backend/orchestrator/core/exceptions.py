class OrchestratorError(Exception):
    """Base exception for the sandbox orchestrator."""

    pass


class ProvisioningError(OrchestratorError):
    """Raised when the runtime fails to create or boot a sandbox."""

    pass


class SandboxUnavailableError(OrchestratorError):
    """Raised when a session has no running sandbox or its agent is unreachable."""

    def __init__(self, session_id: str, reason: str = "sandbox is not running"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Sandbox for session {session_id} unavailable: {reason}")


class NotFoundError(OrchestratorError):
    """Raised when a file, session, sandbox or job does not exist."""

    pass


class OperationFailedError(OrchestratorError):
    """Raised when a proxied sandbox operation fails.

    The sandbox's prior state stays valid; the caller decides whether to retry.
    """

    pass


class InconsistentJobStateError(OrchestratorError):
    """Raised when stored job fields contradict the stored status."""

    def __init__(self, job_id: str, stored: str, derived: str):
        self.job_id = job_id
        self.stored = stored
        self.derived = derived
        super().__init__(f"Job {job_id} stored as '{stored}' but derives to '{derived}'")


class InvalidJobTransitionError(OrchestratorError):
    """Raised when a job cannot move to the requested status."""

    pass


class RestartLimitExceededError(OrchestratorError):
    """Raised when a job's restart chain is exhausted."""

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Restart limit exceeded for job '{job_id}' after {attempts} restarts")


class StepTimeoutError(OrchestratorError):
    """Raised when a worker step exceeds its time bound."""

    def __init__(self, step: str, seconds: float):
        self.step = step
        self.seconds = seconds
        super().__init__(f"Step '{step}' timed out after {seconds:g}s")


class RuntimeResourceNotFound(OrchestratorError):
    """Raised by a runtime adapter when the underlying resource is already gone."""

    pass


class GitOperationError(OrchestratorError):
    """Raised when VCS hosting operations fail."""

    pass
