"""
Shared spectrum helpers used by the mixer and the histogram analyzer.

DC shift, component extraction, histogram statistics and 8-bit rescaling live
here once so both engines scale spectra identically.
"""

from dataclasses import asdict, dataclass
from typing import List

import numpy as np

from wavelab.utils.errors import JobValidationError

COMPONENTS = ("magnitude", "phase", "real", "imag")
HISTOGRAM_BINS = 256

# Components rendered through log1p(|v|) before rescaling to 8 bits.
LOG_COMPRESSED_COMPONENTS = frozenset({"magnitude"})


def dc_shift(data: np.ndarray) -> np.ndarray:
    """
    Cyclic quadrant swap moving the zero-frequency term to the centre.

    out[y, x] = data[(y + H//2) % H, (x + W//2) % W]. Applying it twice is the
    identity only for even sizes; use dc_unshift to undo it for odd sizes.
    """
    h, w = data.shape
    return np.roll(data, (-(h // 2), -(w // 2)), axis=(0, 1))


def dc_unshift(data: np.ndarray) -> np.ndarray:
    h, w = data.shape
    return np.roll(data, (h // 2, w // 2), axis=(0, 1))


def extract_component(real: np.ndarray, imag: np.ndarray, component: str) -> np.ndarray:
    if component == "magnitude":
        return np.sqrt(real.astype(np.float64) ** 2 + imag.astype(np.float64) ** 2).astype(np.float32)
    if component == "phase":
        return np.arctan2(imag, real).astype(np.float32)
    if component == "real":
        return np.asarray(real, dtype=np.float32)
    if component == "imag":
        return np.asarray(imag, dtype=np.float32)
    raise JobValidationError(f"Unknown component: {component}")


@dataclass
class HistogramStats:
    bins: List[float]
    min: float
    max: float
    mean: float
    std_dev: float

    def to_dict(self) -> dict:
        return asdict(self)


def compute_statistics(data: np.ndarray, bins: int = HISTOGRAM_BINS) -> HistogramStats:
    """
    Min/max/mean pass, then a variance and histogram pass.

    Bin counts are divided by the tallest bin, so the mode bin is exactly 1.0.
    """
    values = np.asarray(data, dtype=np.float64).reshape(-1)
    if values.size == 0:
        raise JobValidationError("Cannot compute statistics of an empty field")

    vmin = float(values.min())
    vmax = float(values.max())
    mean = float(values.mean())
    value_range = (vmax - vmin) or 1.0

    idx = np.floor((values - vmin) / value_range * bins).astype(np.int64)
    idx = np.clip(idx, 0, bins - 1)
    counts = np.bincount(idx, minlength=bins).astype(np.float64)
    std_dev = float(np.sqrt(np.mean((values - mean) ** 2)))

    normalized = counts / counts.max()
    return HistogramStats(bins=normalized.tolist(), min=vmin, max=vmax, mean=mean, std_dev=std_dev)


def to_uint8(data: np.ndarray, vmin: float, vmax: float, log_compress: bool = False) -> np.ndarray:
    """
    Linear rescale of [vmin, vmax] onto [0, 255], rounding half up.

    With log_compress the samples and both bounds go through log1p(|v|)
    first. A zero range maps every sample to 0.
    """
    values = np.asarray(data, dtype=np.float64)
    if log_compress:
        values = np.log1p(np.abs(values))
        vmin, vmax = float(np.log1p(abs(vmin))), float(np.log1p(abs(vmax)))
        vmin, vmax = min(vmin, vmax), max(vmin, vmax)

    value_range = vmax - vmin
    if value_range == 0:
        return np.zeros(values.shape, dtype=np.uint8)
    scaled = np.floor((values - vmin) / value_range * 255.0 + 0.5)
    return np.clip(scaled, 0, 255).astype(np.uint8)
