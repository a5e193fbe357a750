from enum import Enum
from typing import Any, Callable, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from wavelab.utils.errors import JobCancelled


class JobKind(str, Enum):
    DECODE = "decode"
    HISTOGRAM = "histogram"
    MIX = "mix"
    BEAM = "beam"
    BEAM_PATTERN = "beam_pattern"


class EnvelopeKind(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"
    CANCEL = "cancel"
    CANCELLED = "cancelled"


TERMINAL_KINDS = frozenset({EnvelopeKind.COMPLETE, EnvelopeKind.ERROR, EnvelopeKind.CANCELLED})


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobEnvelope(BaseModel):
    """A message exchanged between the pool and a compute worker, in either direction."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EnvelopeKind
    job_id: str
    job_kind: Optional[JobKind] = None
    payload: Optional[Any] = None  # numpy arrays travel by pickle
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    error: Optional[str] = None
    error_type: Optional[str] = None
    worker_pid: Optional[int] = None
    execution_time_ms: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS


class CancelToken:
    """
    Cancellation marker for one job.

    Wraps the event owned by the worker slot the job runs on. The pool clears
    the event before each dispatch, so a token only ever observes requests
    made for its own job.
    """

    def __init__(self, job_id: str, event=None):
        self.job_id = job_id
        self._event = event

    @property
    def cancelled(self) -> bool:
        return self._event is not None and self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelled(self.job_id)


class JobContext:
    """Execution context handed to a job handler inside a worker."""

    def __init__(
        self,
        *,
        job_id: str,
        settings: Any,
        capabilities: Any,
        token: Optional[CancelToken] = None,
        progress_sink: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.job_id = job_id
        self.settings = settings
        self.capabilities = capabilities
        self.token = token or CancelToken(job_id)
        self._progress_sink = progress_sink

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def raise_if_cancelled(self) -> None:
        self.token.raise_if_cancelled()

    def report_progress(self, progress: float) -> None:
        if self._progress_sink is None:
            return
        self._progress_sink(min(1.0, max(0.0, float(progress))))
