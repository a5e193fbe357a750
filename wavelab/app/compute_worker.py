import os
import time

from wavelab.app.logging_config import LoggingContext, configure_from_settings, get_logger, performance_log
from wavelab.utils.capabilities import detect_capabilities
from wavelab.utils.errors import JobCancelled, JobValidationError
from wavelab.utils.ipc_types import CancelToken, EnvelopeKind, JobContext, JobEnvelope, JobKind

logger = get_logger(__name__)

# Handlers are imported on first use so a worker only pays for the engines it runs.
HANDLER_REGISTRY = {kind.value: None for kind in JobKind}


def _lazy_load_handler(job_kind: str):
    """Resolve and cache the handler for a job kind; None for unknown kinds."""
    if job_kind not in HANDLER_REGISTRY:
        return None
    if HANDLER_REGISTRY[job_kind] is None:
        from wavelab.app import handlers

        HANDLER_REGISTRY[job_kind] = getattr(handlers, f"handle_{job_kind}_job")
    return HANDLER_REGISTRY[job_kind]


def _progress_sink(result_q, envelope: JobEnvelope, pid: int):
    def report(progress: float) -> None:
        result_q.put(JobEnvelope(
            kind=EnvelopeKind.PROGRESS,
            job_id=envelope.job_id,
            job_kind=envelope.job_kind,
            progress=progress,
            worker_pid=pid,
        ))
    return report


def run_job(envelope: JobEnvelope, settings, capabilities, result_q, cancel_event, pid: int) -> JobEnvelope:
    """Execute one START envelope and build its terminal envelope."""
    job_kind = envelope.job_kind.value if envelope.job_kind is not None else None
    token = CancelToken(envelope.job_id, cancel_event)
    ctx = JobContext(
        job_id=envelope.job_id,
        settings=settings,
        capabilities=capabilities,
        token=token,
        progress_sink=_progress_sink(result_q, envelope, pid),
    )

    try:
        handler = _lazy_load_handler(job_kind)
        if not handler:
            raise JobValidationError(f"No handler found for job kind: {job_kind}")

        token.raise_if_cancelled()
        payload = handler(ctx, **(envelope.payload or {}))
        # A job that finished without noticing its token still reports CANCELLED.
        token.raise_if_cancelled()

        return JobEnvelope(
            kind=EnvelopeKind.COMPLETE,
            job_id=envelope.job_id,
            job_kind=envelope.job_kind,
            payload=payload,
            worker_pid=pid,
        )
    except JobCancelled:
        return JobEnvelope(
            kind=EnvelopeKind.CANCELLED,
            job_id=envelope.job_id,
            job_kind=envelope.job_kind,
            worker_pid=pid,
        )
    except JobValidationError as e:
        logger.warning("job_rejected", error=str(e))
        return JobEnvelope(
            kind=EnvelopeKind.ERROR,
            job_id=envelope.job_id,
            job_kind=envelope.job_kind,
            error=f"{type(e).__name__}: {e}",
            error_type=type(e).__name__,
            worker_pid=pid,
        )
    except Exception as e:
        logger.exception("job_failed", error=str(e))
        return JobEnvelope(
            kind=EnvelopeKind.ERROR,
            job_id=envelope.job_id,
            job_kind=envelope.job_kind,
            error=f"{type(e).__name__}: {e}",
            error_type=type(e).__name__,
            worker_pid=pid,
        )


def main(settings, inbox, result_q, cancel_event, worker_id: int):
    """The main execution loop for a compute worker process."""
    configure_from_settings(settings)
    pid = os.getpid()
    worker_name = f"ComputeWorker-{worker_id}"
    logger.info("worker_started", worker=worker_name, pid=pid)

    capabilities = detect_capabilities()

    while True:
        try:
            envelope = inbox.get()
            if envelope is None:
                break
            if envelope.kind != EnvelopeKind.START:
                logger.warning("unexpected_envelope", worker=worker_name, kind=envelope.kind.value)
                continue

            start_time = time.monotonic()
            with LoggingContext(job_id=envelope.job_id, worker_id=worker_id):
                result = run_job(envelope, settings, capabilities, result_q, cancel_event, pid)
                result.execution_time_ms = (time.monotonic() - start_time) * 1000
                performance_log.log_compute_job(
                    job_id=envelope.job_id,
                    job_kind=envelope.job_kind.value if envelope.job_kind else "unknown",
                    outcome=result.kind.value,
                    duration_ms=result.execution_time_ms,
                    worker_pid=pid,
                )
            result_q.put(result)

        except (KeyboardInterrupt, EOFError):
            break
        except Exception as e:
            # Errors in the loop itself; the pool notices the exit and fails the job.
            logger.exception("worker_loop_error", worker=worker_name, error=str(e))
            break

    logger.info("worker_exiting", worker=worker_name, pid=pid)
