"""Custom exception classes for the Chronicle job orchestration core."""

from typing import Optional


class ChronicleError(Exception):
    """Base exception for all application errors."""

    pass


class NotFound(ChronicleError):
    """A job-targeted operation referenced an unknown job id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransition(ChronicleError):
    """An illegal state change was attempted on a job record."""

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(f"Invalid transition for job {job_id}: {message}")


class ProgressRegression(InvalidTransition):
    """A checkpoint tried to lower the stored progress."""

    def __init__(self, job_id: str, stored: int, attempted: int) -> None:
        self.stored = stored
        self.attempted = attempted
        super().__init__(job_id, f"progress would regress from {stored} to {attempted}")


class AlreadyTerminal(ChronicleError):
    """The job already succeeded; there is nothing left to advance."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} already succeeded")


class Busy(ChronicleError):
    """Another execution currently holds the job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} is being executed elsewhere")


class AttemptsExhausted(ChronicleError):
    """The automatic recovery cap for a job was reached."""

    def __init__(self, job_id: str, attempts: int) -> None:
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Job {job_id} exhausted {attempts} automatic resume attempts")


class ExecutionAborted(ChronicleError):
    """Execution stopped at a step boundary without a job failure."""

    pass


class LeaseExpired(ExecutionAborted):
    """The worker's lease on a job ran out; another worker may own it now."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Lease on job {job_id} expired")


class JobCancelled(ExecutionAborted):
    """The job was abandoned by external tooling between two steps."""

    pass


class StepError(ChronicleError):
    """A pipeline step raised; wraps the cause with the step name."""

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' failed: {cause}")


class ProviderError(ChronicleError):
    """A generation provider failed or timed out."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        self.provider = provider
        self.status_code = status_code
        prefix = f"{provider} error {status_code}" if status_code else f"{provider} error"
        super().__init__(f"{prefix}: {message}")


class StoreError(ChronicleError):
    """The job record store could not complete an operation."""

    pass


class QueueError(ChronicleError):
    """The durable queue could not complete an operation."""

    pass
