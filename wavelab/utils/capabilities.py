"""
Runtime capability probing.

detect_capabilities() is called once when a process starts (the pool on
start(), every compute worker on boot). The resulting record is immutable and
is passed explicitly to whatever needs it.
"""

from dataclasses import dataclass
from typing import Optional
import os

import numpy as np

from wavelab.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Capabilities:
    native_fft: bool
    native_fft_error: Optional[str] = None
    cpu_count: int = 1


def detect_capabilities() -> Capabilities:
    """Probe the native transform backend with a tiny round trip."""
    from wavelab.dsp.transform import NativeBackend

    cpu_count = os.cpu_count() or 1
    probe = np.arange(16, dtype=np.float32).reshape(4, 4)
    try:
        backend = NativeBackend()
        re, im = backend.fft2d(probe, np.zeros_like(probe))
        restored = backend.ifft2d(re, im)
        if not np.allclose(restored, probe, atol=1e-3):
            raise ValueError("native round trip mismatch")
    except Exception as e:
        logger.warning("native_fft_unavailable", error=f"{type(e).__name__}: {e}")
        return Capabilities(native_fft=False, native_fft_error=f"{type(e).__name__}: {e}", cpu_count=cpu_count)

    logger.debug("capabilities_detected", native_fft=True, cpu_count=cpu_count)
    return Capabilities(native_fft=True, cpu_count=cpu_count)
