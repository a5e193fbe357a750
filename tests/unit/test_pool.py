"""
Unit tests for the compute pool.

Worker processes are replaced by FakeContext from conftest: units are
"spawned" without running anything and the tests feed worker envelopes to
the pool by hand, which keeps scheduling fully deterministic.
"""

import asyncio
import gc
from unittest.mock import Mock, patch

import pytest

from wavelab.app.pool import ComputePool
from wavelab.utils.capabilities import Capabilities
from wavelab.utils.errors import (
    CapacityError,
    JobFailedError,
    JobValidationError,
    PoolClosedError,
    WorkerCrashedError,
)
from wavelab.utils.ipc_types import EnvelopeKind, JobEnvelope


@pytest.fixture(autouse=True)
def fixed_capabilities():
    with patch("wavelab.app.pool.detect_capabilities", return_value=Capabilities(native_fft=True, cpu_count=4)):
        yield


def _pool(test_config, fake_mp_context, **overrides):
    settings = test_config.model_copy(update=overrides)
    return ComputePool(settings, mp_context=fake_mp_context)


def _reply(handle, kind=EnvelopeKind.COMPLETE, **fields):
    return JobEnvelope(kind=kind, job_id=handle.job_id, job_kind=handle.kind, **fields)


def _inbox(fake_mp_context, index):
    return fake_mp_context.processes[index].args[1]


@pytest.mark.unit
class TestAdmission:

    @pytest.mark.asyncio
    async def test_queue_depth_is_bounded(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1, MAX_QUEUE_DEPTH=2) as pool:
            handles = [pool.submit("beam", {}) for _ in range(3)]

            with pytest.raises(CapacityError):
                pool.submit("beam", {})

            stats = pool.stats()
            assert stats["busy"] == 1
            assert stats["queue_length"] == 2
            assert not any(h.done() for h in handles)

    @pytest.mark.asyncio
    async def test_unknown_kind_is_rejected(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context) as pool:
            with pytest.raises(JobValidationError, match="Unknown job kind"):
                pool.submit("fourier", {})

    @pytest.mark.asyncio
    async def test_submit_requires_running_pool(self, test_config, fake_mp_context):
        pool = _pool(test_config, fake_mp_context)
        with pytest.raises(PoolClosedError):
            pool.submit("beam", {})


@pytest.mark.unit
class TestDispatch:

    @pytest.mark.asyncio
    async def test_busy_never_exceeds_pool_size(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=2, MAX_QUEUE_DEPTH=10) as pool:
            handles = [pool.submit("beam", {"n": i}) for i in range(5)]
            assert pool.stats()["busy"] == 2
            assert len(fake_mp_context.processes) == 2

            # FIFO: finishing the first job dispatches the third.
            pool.handle_envelope(_reply(handles[0], payload={"n": 0}))
            assert await handles[0] == {"n": 0}
            assert pool.stats()["busy"] == 2
            assert pool.stats()["queue_length"] == 2

            for handle in handles[1:]:
                pool.handle_envelope(_reply(handle, payload={}))
                assert pool.stats()["busy"] <= 2

            stats = pool.stats()
            assert stats["busy"] == 0
            assert stats["peak_busy"] == 2
            assert stats["units"] == 2

    @pytest.mark.asyncio
    async def test_start_envelope_reaches_unit_inbox(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            handle = pool.submit("histogram", {"component": "phase"})
            envelope = _inbox(fake_mp_context, 0).get_nowait()
            assert envelope.kind == EnvelopeKind.START
            assert envelope.job_id == handle.job_id
            assert envelope.payload == {"component": "phase"}

    @pytest.mark.asyncio
    async def test_error_envelope_fails_future(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context) as pool:
            handle = pool.submit("mix", {})
            pool.handle_envelope(_reply(
                handle,
                kind=EnvelopeKind.ERROR,
                error="JobValidationError: No images provided",
                error_type="JobValidationError",
            ))
            with pytest.raises(JobFailedError) as exc_info:
                await handle
            assert exc_info.value.error_type == "JobValidationError"
            assert exc_info.value.job_id == handle.job_id

    @pytest.mark.asyncio
    async def test_progress_callback(self, test_config, fake_mp_context):
        on_progress = Mock()
        async with _pool(test_config, fake_mp_context) as pool:
            handle = pool.submit("beam", {}, on_progress=on_progress)
            pool.handle_envelope(_reply(handle, kind=EnvelopeKind.PROGRESS, progress=0.5))
            on_progress.assert_called_once_with(0.5)

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_not_fatal(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context) as pool:
            handle = pool.submit("beam", {}, on_progress=Mock(side_effect=RuntimeError("ui gone")))
            pool.handle_envelope(_reply(handle, kind=EnvelopeKind.PROGRESS, progress=0.1))
            pool.handle_envelope(_reply(handle, payload={"done": True}))
            assert await handle == {"done": True}


@pytest.mark.unit
class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            running = pool.submit("beam", {})
            queued = pool.submit("beam", {})

            assert pool.cancel(queued.job_id) is True
            assert queued.future.cancelled()
            assert pool.stats()["queue_length"] == 0
            assert not running.done()

    @pytest.mark.asyncio
    async def test_cancel_running_job_drops_late_completion(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            handle = pool.submit("beam", {})
            cancel_event = fake_mp_context.processes[0].args[3]

            assert handle.cancel() is True
            assert handle.future.cancelled()
            assert cancel_event.is_set()
            # The unit stays busy until it reports back.
            assert pool.stats()["busy"] == 1

            pool.handle_envelope(_reply(handle, payload={"late": True}))
            assert handle.future.cancelled()
            assert pool.stats()["busy"] == 0

            assert pool.cancel(handle.job_id) is False

    @pytest.mark.asyncio
    async def test_cancel_event_is_cleared_for_next_job(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            first = pool.submit("beam", {})
            second = pool.submit("beam", {})
            cancel_event = fake_mp_context.processes[0].args[3]

            first.cancel()
            pool.handle_envelope(_reply(first, kind=EnvelopeKind.CANCELLED))

            assert not cancel_event.is_set()
            assert pool.stats()["busy"] == 1
            assert not second.done()

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context) as pool:
            assert pool.cancel("does-not-exist") is False

    @pytest.mark.asyncio
    async def test_timed_out_run_leaves_the_queue(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            running = pool.submit("beam", {})

            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(pool.run("beam", {}), 0.05)
            await asyncio.sleep(0)

            assert pool.stats()["queue_length"] == 0
            pool.handle_envelope(_reply(running, payload={}))
            assert await running == {}
            # Only the first job ever reached the unit.
            assert _inbox(fake_mp_context, 0).qsize() == 1

    @pytest.mark.asyncio
    async def test_cancelling_the_future_signals_the_running_unit(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            handle = pool.submit("beam", {})
            cancel_event = fake_mp_context.processes[0].args[3]

            handle.future.cancel()
            await asyncio.sleep(0)

            assert cancel_event.is_set()
            assert pool.cancel(handle.job_id) is False
            pool.handle_envelope(_reply(handle, kind=EnvelopeKind.CANCELLED))
            assert pool.stats()["busy"] == 0


@pytest.mark.unit
class TestSupervision:

    @pytest.mark.asyncio
    async def test_dead_unit_fails_its_job(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1) as pool:
            crashed = pool.submit("beam", {})
            waiting = pool.submit("beam", {})

            fake_mp_context.processes[0].crash(exitcode=-9)
            pool._check_units()

            with pytest.raises(WorkerCrashedError):
                await crashed
            # A replacement unit picks up the queued job.
            assert len(fake_mp_context.processes) == 2
            assert pool.stats()["busy"] == 1
            assert not waiting.done()

    @pytest.mark.asyncio
    async def test_orphaned_result_is_ignored(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context) as pool:
            pool.handle_envelope(JobEnvelope(kind=EnvelopeKind.COMPLETE, job_id="ghost"))
            assert pool.stats()["busy"] == 0


@pytest.mark.unit
class TestLifecycle:

    @pytest.mark.asyncio
    async def test_warmup_spawns_every_unit(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=3, WARMUP_ON_LOAD=True) as pool:
            assert pool.stats()["units"] == 3
            assert all(p.started for p in fake_mp_context.processes)

    @pytest.mark.asyncio
    async def test_idle_units_are_reclaimed(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=2, WARMUP_ON_LOAD=True,
                         IDLE_TIMEOUT_MS=20) as pool:
            await asyncio.sleep(0.1)
            assert pool.stats()["units"] == 0

            # The next submission provisions a fresh unit.
            pool.submit("beam", {})
            assert pool.stats()["units"] == 1
            assert len(fake_mp_context.processes) == 3

    @pytest.mark.asyncio
    async def test_submission_disarms_idle_timer(self, test_config, fake_mp_context):
        async with _pool(test_config, fake_mp_context, POOL_SIZE=1, WARMUP_ON_LOAD=True,
                         IDLE_TIMEOUT_MS=20) as pool:
            pool.submit("beam", {})
            await asyncio.sleep(0.1)
            assert pool.stats()["units"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending_jobs(self, test_config, fake_mp_context):
        pool = _pool(test_config, fake_mp_context, POOL_SIZE=1)
        await pool.start()
        running = pool.submit("beam", {})
        queued = pool.submit("beam", {})

        await pool.shutdown()

        for handle in (running, queued):
            with pytest.raises(PoolClosedError):
                await handle
        assert _inbox(fake_mp_context, 0).queue[-1] is None
        with pytest.raises(PoolClosedError):
            pool.submit("beam", {})

    @pytest.mark.asyncio
    async def test_shutdown_with_unawaited_handles_is_quiet(self, test_config, fake_mp_context):
        loop = asyncio.get_running_loop()
        exception_handler = Mock()
        loop.set_exception_handler(exception_handler)
        try:
            pool = _pool(test_config, fake_mp_context, POOL_SIZE=1)
            await pool.start()
            pool.submit("beam", {})
            pool.submit("beam", {})

            await pool.shutdown()
            gc.collect()

            exception_handler.assert_not_called()
        finally:
            loop.set_exception_handler(None)
