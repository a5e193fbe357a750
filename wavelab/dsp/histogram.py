"""
Histogram Analyzer

Extracts one spectral component from a transformed image, recentres it on the
DC term and returns histogram statistics plus an 8-bit visualization.
"""

from dataclasses import dataclass

import numpy as np

from wavelab.dsp.spectrum import (
    COMPONENTS,
    LOG_COMPRESSED_COMPONENTS,
    HistogramStats,
    compute_statistics,
    dc_shift,
    extract_component,
    to_uint8,
)
from wavelab.dsp.transform import ComplexField
from wavelab.utils.errors import JobValidationError


@dataclass
class HistogramResult:
    histogram: HistogramStats
    visual: np.ndarray
    width: int
    height: int
    component: str

    def to_payload(self) -> dict:
        return {
            "histogram": self.histogram.to_dict(),
            "visual": self.visual.reshape(-1),
            "width": self.width,
            "height": self.height,
            "component": self.component,
        }


def analyze(field: ComplexField, component: str) -> HistogramResult:
    if component not in COMPONENTS:
        raise JobValidationError(f"Unknown component: {component}")

    # Statistics describe the image-sized spectrum, not the padding.
    field = field.cropped()
    data = dc_shift(extract_component(field.real, field.imag, component))
    stats = compute_statistics(data)
    visual = to_uint8(data, stats.min, stats.max, log_compress=component in LOG_COMPRESSED_COMPONENTS)
    return HistogramResult(
        histogram=stats,
        visual=visual,
        width=field.width,
        height=field.height,
        component=component,
    )
