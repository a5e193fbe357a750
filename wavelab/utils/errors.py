"""Exception taxonomy for the compute offload."""

from typing import Optional


class WavelabError(Exception):
    """Base class for all wavelab errors."""


class JobValidationError(WavelabError):
    """The caller submitted a payload the engines cannot accept. Never retried."""


class CapacityError(WavelabError):
    """The pool queue is full; the submission was rejected without queueing."""


class BackendError(WavelabError):
    """A transform backend is unavailable or failed while running."""


class DecodeError(WavelabError):
    """Encoded image bytes could not be decoded."""


class JobCancelled(WavelabError):
    """Raised at a cooperative checkpoint once a job's token has been set."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled" if job_id else "Job was cancelled")


class JobFailedError(WavelabError):
    """Delivered to the submitter when a worker reports an ERROR envelope."""

    def __init__(self, job_id: str, message: str, error_type: Optional[str] = None):
        self.job_id = job_id
        self.error_type = error_type
        super().__init__(message)


class WorkerCrashedError(WavelabError):
    """The worker process running a job exited before reporting an outcome."""


class PoolClosedError(WavelabError):
    """The pool was shut down while the job was still pending."""
