"""
Compute pool.

Owns a bounded set of compute worker processes and the FIFO queue of jobs
waiting for one. All bookkeeping (queue, unit table, busy count, futures)
is touched only from the event loop thread; the blocking result queue is
read in the default executor, following the IO-engine / compute-worker split.

    async with ComputePool(Settings(POOL_SIZE=2)) as pool:
        result = await pool.run("beam", payload, on_progress=print)
"""

import asyncio
import functools
import multiprocessing as mp
import queue
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from wavelab.app import compute_worker
from wavelab.app.logging_config import get_logger, performance_log
from wavelab.utils.capabilities import detect_capabilities
from wavelab.utils.config import Settings
from wavelab.utils.errors import (
    CapacityError,
    JobFailedError,
    JobValidationError,
    PoolClosedError,
    WorkerCrashedError,
)
from wavelab.utils.ipc_types import EnvelopeKind, JobEnvelope, JobKind, new_job_id

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class _Job:
    job_id: str
    kind: JobKind
    payload: Dict[str, Any]
    future: asyncio.Future
    on_progress: Optional[ProgressCallback] = None
    cancelled: bool = False


@dataclass
class _Unit:
    worker_id: int
    process: Any
    inbox: Any
    cancel_event: Any
    job_id: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.job_id is not None


class JobHandle:
    """Submitter's view of one job. Awaiting the handle awaits its future."""

    def __init__(self, pool: "ComputePool", job_id: str, kind: JobKind, future: asyncio.Future):
        self._pool = pool
        self.job_id = job_id
        self.kind = kind
        self.future = future

    def cancel(self) -> bool:
        return self._pool.cancel(self.job_id)

    def done(self) -> bool:
        return self.future.done()

    def __await__(self):
        return self.future.__await__()

    def __repr__(self):
        return f"JobHandle(job_id={self.job_id!r}, kind={self.kind.value!r}, done={self.done()})"


class ComputePool:
    """
    Bounded pool of compute worker processes.

    submit() never blocks: it either queues the job (dispatching immediately
    when a unit is free) or raises CapacityError. Units are spawned lazily up
    to POOL_SIZE, or all at start() with WARMUP_ON_LOAD, and are reclaimed
    after IDLE_TIMEOUT_MS without work (0 disables reclamation).
    """

    def __init__(self, settings: Optional[Settings] = None, mp_context=None):
        self.settings = settings or Settings()
        self._mp = mp_context or mp.get_context(self.settings.WORKER_START_METHOD)
        self.capabilities = None
        self.is_running = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._result_q = None
        self._listener_task: Optional[asyncio.Task] = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None

        self._queue: Deque[_Job] = deque()
        self._running: Dict[str, _Job] = {}
        self._units: Dict[int, _Unit] = {}
        self._busy = 0
        self._peak_busy = 0
        self._next_worker_id = 0

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self.capabilities = detect_capabilities()
        self._result_q = self._mp.Queue()
        self.is_running = True
        self._listener_task = asyncio.create_task(self.result_listener())

        if self.settings.WARMUP_ON_LOAD:
            for _ in range(self.settings.POOL_SIZE):
                self._spawn_unit()
            self._maybe_arm_idle()

        logger.info(
            "compute_pool_started",
            pool_size=self.settings.POOL_SIZE,
            max_queue_depth=self.settings.MAX_QUEUE_DEPTH,
            warm_units=len(self._units),
            native_fft=self.capabilities.native_fft,
        )

    async def shutdown(self) -> None:
        """Stop every unit and fail all pending and running jobs with PoolClosedError."""
        if not self.is_running:
            return
        self.is_running = False
        self._disarm_idle()

        while self._queue:
            job = self._queue.popleft()
            self._fail(job, PoolClosedError(f"Pool closed before job {job.job_id} started"), retrieved=True)
        for job in self._running.values():
            self._fail(job, PoolClosedError(f"Pool closed while job {job.job_id} was running"), retrieved=True)
        self._running.clear()

        units = self._detach_units()
        for unit in units:
            unit.cancel_event.set()
        self._busy = 0

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop_units, units)

        if self._listener_task is not None:
            await self._listener_task
            self._listener_task = None
        self._result_q.close()
        logger.info("compute_pool_stopped", peak_busy=self._peak_busy)

    async def __aenter__(self) -> "ComputePool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ------------------------------------------------------------------ submission

    def submit(
        self,
        kind: Union[JobKind, str],
        payload: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobHandle:
        if not self.is_running:
            raise PoolClosedError("Compute pool is not running")
        try:
            kind = JobKind(kind)
        except ValueError as e:
            raise JobValidationError(f"Unknown job kind: {kind}") from e

        if len(self._queue) >= self.settings.MAX_QUEUE_DEPTH:
            logger.warning("job_rejected_queue_full", job_kind=kind.value, queue_length=len(self._queue))
            raise CapacityError(
                f"Queue is full ({len(self._queue)}/{self.settings.MAX_QUEUE_DEPTH} pending jobs)"
            )

        job = _Job(
            job_id=new_job_id(),
            kind=kind,
            payload=dict(payload or {}),
            future=self._loop.create_future(),
            on_progress=on_progress,
        )
        job.future.add_done_callback(functools.partial(self._on_future_done, job.job_id))
        self._disarm_idle()
        self._queue.append(job)
        logger.debug("job_queued", job_id=job.job_id, job_kind=kind.value)
        self._dispatch()
        performance_log.log_queue_metrics(
            "pending", len(self._queue), self.settings.MAX_QUEUE_DEPTH, busy=self._busy
        )
        return JobHandle(self, job.job_id, kind, job.future)

    async def run(
        self,
        kind: Union[JobKind, str],
        payload: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Any:
        return await self.submit(kind, payload, on_progress).future

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job. Returns False for unknown or finished jobs.

        A running job's unit stays busy until it reports its terminal envelope;
        the submitter's future is cancelled right away.
        """
        for job in self._queue:
            if job.job_id == job_id:
                self._queue.remove(job)
                job.future.cancel()
                logger.info("job_cancelled", job_id=job_id, state="queued")
                self._maybe_arm_idle()
                return True

        job = self._running.get(job_id)
        if job is None or job.cancelled:
            return False
        job.cancelled = True
        unit = self._unit_for(job_id)
        if unit is not None:
            unit.cancel_event.set()
        logger.info(
            "job_cancel_requested",
            envelope=EnvelopeKind.CANCEL.value,
            job_id=job_id,
            worker_id=unit.worker_id if unit else None,
        )
        job.future.cancel()
        return True

    def _on_future_done(self, job_id: str, future: asyncio.Future) -> None:
        # Covers futures cancelled by the submitter, e.g. a timed-out run().
        if future.cancelled() and self.is_running:
            self.cancel(job_id)

    def stats(self) -> Dict[str, int]:
        return {
            "queue_length": len(self._queue),
            "busy": self._busy,
            "units": len(self._units),
            "peak_busy": self._peak_busy,
            "pool_size": self.settings.POOL_SIZE,
            "max_queue_depth": self.settings.MAX_QUEUE_DEPTH,
        }

    # ------------------------------------------------------------------ dispatch

    def _spawn_unit(self) -> _Unit:
        worker_id = self._next_worker_id
        self._next_worker_id += 1
        inbox = self._mp.Queue()
        cancel_event = self._mp.Event()
        process = self._mp.Process(
            target=compute_worker.main,
            args=(self.settings, inbox, self._result_q, cancel_event, worker_id),
            name=f"ComputeWorker-{worker_id}",
            daemon=True,
        )
        process.start()
        unit = _Unit(worker_id=worker_id, process=process, inbox=inbox, cancel_event=cancel_event)
        self._units[worker_id] = unit
        logger.info("worker_spawned", worker_id=worker_id, pid=process.pid)
        return unit

    def _free_unit(self) -> Optional[_Unit]:
        for unit in self._units.values():
            if not unit.busy and unit.process.is_alive():
                return unit
        if len(self._units) < self.settings.POOL_SIZE:
            return self._spawn_unit()
        return None

    def _dispatch(self) -> None:
        while self._queue and self._busy < self.settings.POOL_SIZE:
            unit = self._free_unit()
            if unit is None:
                return
            job = self._queue.popleft()
            unit.cancel_event.clear()
            unit.job_id = job.job_id
            self._running[job.job_id] = job
            self._busy += 1
            self._peak_busy = max(self._peak_busy, self._busy)
            unit.inbox.put(JobEnvelope(
                kind=EnvelopeKind.START,
                job_id=job.job_id,
                job_kind=job.kind,
                payload=job.payload,
            ))
            logger.debug("job_dispatched", job_id=job.job_id, job_kind=job.kind.value, worker_id=unit.worker_id)

    def _unit_for(self, job_id: str) -> Optional[_Unit]:
        for unit in self._units.values():
            if unit.job_id == job_id:
                return unit
        return None

    def _release(self, job_id: str) -> None:
        unit = self._unit_for(job_id)
        if unit is not None:
            unit.job_id = None
            self._busy -= 1

    @staticmethod
    def _fail(job: _Job, error: Exception, retrieved: bool = False) -> None:
        if job.future.done():
            return
        job.future.set_exception(error)
        if retrieved:
            # Handles nobody awaits stay quiet when garbage collected.
            job.future.exception()

    # ------------------------------------------------------------------ results

    def _poll_result(self) -> Optional[JobEnvelope]:
        try:
            return self._result_q.get(timeout=self.settings.RESULT_POLL_INTERVAL_S)
        except queue.Empty:
            return None

    async def result_listener(self) -> None:
        """
        Background task that reads worker envelopes and resolves futures.
        Unit liveness is checked whenever a poll comes back empty.
        """
        logger.debug("result_listener_started")
        loop = asyncio.get_running_loop()

        while self.is_running:
            try:
                envelope = await loop.run_in_executor(None, self._poll_result)
                if not self.is_running:
                    break
                if envelope is None:
                    self._check_units()
                else:
                    self.handle_envelope(envelope)
            except Exception as e:
                logger.error("result_listener_error", error=f"{type(e).__name__}: {e}")

        logger.debug("result_listener_stopped")

    def handle_envelope(self, envelope: JobEnvelope) -> None:
        if envelope.kind == EnvelopeKind.PROGRESS:
            job = self._running.get(envelope.job_id)
            if job is None or job.cancelled or job.on_progress is None:
                return
            try:
                job.on_progress(envelope.progress)
            except Exception as e:
                logger.warning("progress_callback_failed", job_id=envelope.job_id, error=f"{type(e).__name__}: {e}")
            return

        if not envelope.is_terminal:
            logger.warning("unexpected_envelope", kind=envelope.kind.value, job_id=envelope.job_id)
            return

        job = self._running.pop(envelope.job_id, None)
        if job is None:
            logger.warning("orphaned_result", job_id=envelope.job_id, kind=envelope.kind.value)
            return
        self._release(envelope.job_id)

        if job.cancelled or job.future.done():
            if envelope.kind == EnvelopeKind.COMPLETE:
                logger.info("late_result_dropped", job_id=job.job_id)
        elif envelope.kind == EnvelopeKind.COMPLETE:
            job.future.set_result(envelope.payload)
        elif envelope.kind == EnvelopeKind.ERROR:
            job.future.set_exception(JobFailedError(job.job_id, envelope.error or "", envelope.error_type))
        else:
            job.future.cancel()

        self._dispatch()
        self._maybe_arm_idle()

    def _check_units(self) -> None:
        for worker_id, unit in list(self._units.items()):
            if unit.process.is_alive():
                continue
            del self._units[worker_id]
            exitcode = unit.process.exitcode
            logger.error("worker_died", worker_id=worker_id, exitcode=exitcode, job_id=unit.job_id)
            if unit.job_id is None:
                continue
            job = self._running.pop(unit.job_id, None)
            self._busy -= 1
            if job is not None:
                self._fail(job, WorkerCrashedError(
                    f"Worker {worker_id} exited with code {exitcode} while running job {job.job_id}"
                ))
        self._dispatch()
        self._maybe_arm_idle()

    # ------------------------------------------------------------------ idle reclamation

    def _maybe_arm_idle(self) -> None:
        if (
            not self.is_running
            or self._queue
            or self._busy
            or not self._units
            or self._idle_handle is not None
            or self.settings.IDLE_TIMEOUT_MS <= 0
        ):
            return
        self._idle_handle = self._loop.call_later(self.settings.IDLE_TIMEOUT_MS / 1000, self._on_idle)

    def _disarm_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._queue or self._busy or not self.is_running:
            return
        units = self._detach_units()
        logger.info("idle_units_reclaimed", count=len(units))
        self._loop.run_in_executor(None, self._stop_units, units)

    def _detach_units(self) -> List[_Unit]:
        units = list(self._units.values())
        self._units.clear()
        return units

    def _stop_units(self, units: List[_Unit]) -> None:
        """Blocking: sentinel every unit, join, and terminate stragglers."""
        timeout = self.settings.WORKER_SHUTDOWN_TIMEOUT_S
        for unit in units:
            try:
                unit.inbox.put(None)
            except (ValueError, OSError) as e:
                logger.warning("worker_sentinel_failed", worker_id=unit.worker_id, error=str(e))
        for unit in units:
            unit.process.join(timeout)
            if unit.process.is_alive():
                logger.warning("worker_terminated", worker_id=unit.worker_id, pid=unit.process.pid)
                unit.process.terminate()
                unit.process.join(1)
