"""
Global pytest configuration and fixtures for wavelab tests.
"""

import queue
import threading
from unittest.mock import Mock

import numpy as np
import pytest

from wavelab.dsp.pixels import PixelBuffer
from wavelab.utils.capabilities import Capabilities
from wavelab.utils.config import Settings
from wavelab.utils.ipc_types import CancelToken, JobContext


@pytest.fixture
def test_config():
    """Create a test configuration with safe default values."""
    return Settings(
        POOL_SIZE=2,
        MAX_QUEUE_DEPTH=4,
        IDLE_TIMEOUT_MS=60_000,
        WARMUP_ON_LOAD=False,
        RESULT_POLL_INTERVAL_S=0.05,
        WORKER_SHUTDOWN_TIMEOUT_S=2.0,
        LOG_FORMAT="console",
    )


@pytest.fixture
def native_capabilities():
    return Capabilities(native_fft=True, cpu_count=4)


@pytest.fixture
def make_context(test_config, native_capabilities):
    """Build a JobContext with a real cancellation event and a recording progress sink."""

    def _make(job_id="test_job_123", event=None, settings=None):
        progress = []
        ctx = JobContext(
            job_id=job_id,
            settings=settings or test_config,
            capabilities=native_capabilities,
            token=CancelToken(job_id, event if event is not None else threading.Event()),
            progress_sink=progress.append,
        )
        ctx.progress_values = progress
        return ctx

    return _make


@pytest.fixture
def gradient_image():
    """8x8 luminance ramp with distinct values."""
    samples = (np.arange(64, dtype=np.uint16) * 4).astype(np.uint8)
    return PixelBuffer.luminance(samples, 8, 8)


@pytest.fixture
def odd_image():
    rng = np.random.default_rng(7)
    samples = rng.integers(0, 256, size=5 * 3, dtype=np.uint8)
    return PixelBuffer.luminance(samples, 5, 3)


class FakeQueue(queue.Queue):
    """In-process stand-in for multiprocessing.Queue."""

    def close(self):
        pass


class FakeProcess:
    _next_pid = 1000

    def __init__(self, target=None, args=(), name=None, daemon=None):
        self.target = target
        self.args = args
        self.name = name
        self.daemon = daemon
        self.pid = None
        self.exitcode = None
        self.started = False
        self.alive = False

    def start(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.started = True
        self.alive = True

    def is_alive(self):
        return self.alive

    def join(self, timeout=None):
        pass

    def terminate(self):
        self.alive = False
        self.exitcode = -15

    def crash(self, exitcode=-9):
        self.alive = False
        self.exitcode = exitcode


class FakeContext:
    """multiprocessing context whose processes never run; tests drive results by hand."""

    def __init__(self):
        self.processes = []

    def Queue(self):
        return FakeQueue()

    def Event(self):
        return threading.Event()

    def Process(self, **kwargs):
        process = FakeProcess(**kwargs)
        self.processes.append(process)
        return process


@pytest.fixture
def fake_mp_context():
    return FakeContext()


@pytest.fixture
def mock_result_queue():
    return Mock()
