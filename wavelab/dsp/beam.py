"""
Beamforming Simulator

Expands phased-array descriptors into individual radiating elements and
superposes their phasors over a 2D grid:

    V(x, y) = sum_i A_i * exp(j * (k * d_i + phi_i)),   intensity = |V|^2

Also computes the uniform-linear-array factor used for polar gain plots.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence
import math
import time

import numpy as np

from wavelab.app.logging_config import get_logger
from wavelab.utils.errors import JobValidationError

logger = get_logger(__name__)

SPEED_OF_SOUND = {
    "air": 343.0,
    "water": 1481.0,
    "tissue": 1540.0,
}
DEFAULT_MEDIUM = "air"

GEOMETRIES = ("linear", "curved")
MIN_ELEMENTS = 2
MAX_ELEMENTS = 256
MIN_PITCH = 0.001
MIN_FREQUENCY = 100.0
DEFAULT_MIN_DB = -40.0


def speed_of_sound(medium: Optional[str]) -> float:
    return SPEED_OF_SOUND.get(medium or DEFAULT_MEDIUM, SPEED_OF_SOUND[DEFAULT_MEDIUM])


def wavelength_for(frequency: float, medium: Optional[str]) -> float:
    return speed_of_sound(medium) / frequency


@dataclass
class RadiatingElement:
    x: float
    y: float
    phase_offset: float = 0.0
    amplitude: float = 1.0

    @classmethod
    def from_dict(cls, data: Mapping) -> "RadiatingElement":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            phase_offset=float(data.get("phase_offset", 0.0)),
            amplitude=float(data.get("amplitude", 1.0)),
        )


@dataclass
class ArrayDescriptor:
    """
    A phased array unit. Out-of-range values are clamped on construction
    (element_count to [2, 256], pitch >= 1 mm, frequency >= 100 Hz), and an
    amplitude list that does not match the element count is reset to ones.
    """
    id: str = ""
    name: str = ""
    x: float = 0.0
    y: float = 0.0
    element_count: int = 16
    pitch: float = 0.01
    geometry: str = "linear"
    curvature_radius: float = 0.0
    frequency: float = 1000.0
    steering_angle: float = 0.0  # degrees
    amplitudes: List[float] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self):
        if self.geometry not in GEOMETRIES:
            raise JobValidationError(f"Unknown array geometry: {self.geometry}")
        self.element_count = max(MIN_ELEMENTS, min(MAX_ELEMENTS, int(self.element_count)))
        self.pitch = max(MIN_PITCH, float(self.pitch))
        self.curvature_radius = max(0.0, float(self.curvature_radius))
        self.frequency = max(MIN_FREQUENCY, float(self.frequency))
        self.steering_angle = float(self.steering_angle)
        if len(self.amplitudes) != self.element_count:
            self.amplitudes = [1.0] * self.element_count
        else:
            self.amplitudes = [float(a) for a in self.amplitudes]

    @classmethod
    def from_dict(cls, data: Mapping) -> "ArrayDescriptor":
        position = data.get("position") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            x=float(position.get("x", 0.0)),
            y=float(position.get("y", 0.0)),
            element_count=data.get("element_count", 16),
            pitch=data.get("pitch", 0.01),
            geometry=data.get("geometry", "linear"),
            curvature_radius=data.get("curvature_radius", 0.0),
            frequency=data.get("frequency", 1000.0),
            steering_angle=data.get("steering_angle", 0.0),
            amplitudes=list(data.get("amplitudes") or []),
            enabled=bool(data.get("enabled", True)),
        )

    @property
    def aperture(self) -> float:
        return (self.element_count - 1) * self.pitch

    def wavelength(self, medium: Optional[str]) -> float:
        return wavelength_for(self.frequency, medium)

    def wave_number(self, medium: Optional[str]) -> float:
        return 2 * math.pi / self.wavelength(medium)


def steering_phases(descriptor: ArrayDescriptor, medium: Optional[str]) -> np.ndarray:
    """phi_n = -k * pitch * n * sin(theta0)"""
    k = descriptor.wave_number(medium)
    theta0 = math.radians(descriptor.steering_angle)
    n = np.arange(descriptor.element_count)
    return -k * descriptor.pitch * n * math.sin(theta0)


def expand_elements(descriptor: ArrayDescriptor, medium: Optional[str] = DEFAULT_MEDIUM) -> List[RadiatingElement]:
    phases = steering_phases(descriptor, medium)
    count = descriptor.element_count
    aperture = descriptor.aperture

    if descriptor.geometry == "linear":
        start_x = descriptor.x - aperture / 2
        xs = [start_x + n * descriptor.pitch for n in range(count)]
        ys = [descriptor.y] * count
    elif descriptor.geometry == "curved":
        radius = descriptor.curvature_radius if descriptor.curvature_radius > 0 else aperture / 2
        arc = aperture / radius
        start = -arc / 2 - math.pi / 2
        angles = [start + n / (count - 1) * arc for n in range(count)]
        xs = [descriptor.x + radius * math.cos(a) for a in angles]
        ys = [descriptor.y + radius * math.sin(a) + radius for a in angles]
    else:
        raise JobValidationError(f"Unknown array geometry: {descriptor.geometry}")

    return [
        RadiatingElement(x=xs[n], y=ys[n], phase_offset=float(phases[n]), amplitude=descriptor.amplitudes[n])
        for n in range(count)
    ]


@dataclass
class SimulationField:
    intensity: np.ndarray
    width: int
    height: int
    min: float
    max: float
    compute_time_ms: float = 0.0

    @classmethod
    def empty(cls, compute_time_ms: float = 0.0) -> "SimulationField":
        return cls(np.zeros(0, dtype=np.float32), 0, 0, 0.0, 0.0, compute_time_ms)

    def to_payload(self) -> dict:
        return {
            "intensity": self.intensity,
            "width": self.width,
            "height": self.height,
            "min": self.min,
            "max": self.max,
            "compute_time_ms": self.compute_time_ms,
        }


def _grid_extent(data: Mapping, name: str) -> tuple:
    try:
        return data["width"], data["height"]
    except (KeyError, TypeError) as e:
        raise JobValidationError(f"{name} must provide width and height") from e


def simulate_field(
    elements: Sequence[RadiatingElement],
    wavelength: float,
    grid_width: int,
    grid_height: int,
    field_width: float,
    field_height: float,
    normalize: bool = False,
    ctx=None,
) -> SimulationField:
    """
    Superpose every element's phasor at each grid point, one row at a time.

    Cancellation is checked before each row; progress is reported every
    max(1, H // 10) rows. A cancelled run returns SimulationField.empty().
    """
    started = time.perf_counter()
    if grid_width < 1 or grid_height < 1:
        raise JobValidationError(f"Invalid grid size: {grid_width}x{grid_height}")
    if not wavelength or not math.isfinite(wavelength) or wavelength <= 0:
        raise JobValidationError(f"Invalid wavelength: {wavelength}")

    k = 2 * math.pi / wavelength
    ex = np.array([e.x for e in elements], dtype=np.float64)
    ey = np.array([e.y for e in elements], dtype=np.float64)
    phase = np.array([e.phase_offset for e in elements], dtype=np.float64)
    amp = np.array([e.amplitude for e in elements], dtype=np.float64)

    xs = np.arange(grid_width) * (field_width / grid_width) - field_width / 2
    intensity = np.empty((grid_height, grid_width), dtype=np.float32)
    progress_every = max(1, grid_height // 10)

    for py in range(grid_height):
        if ctx is not None and ctx.cancelled:
            logger.info("beam_simulation_cancelled", row=py, height=grid_height)
            return SimulationField.empty((time.perf_counter() - started) * 1000)

        y = py * (field_height / grid_height) - field_height / 2
        # (width, elements)
        dist = np.hypot(xs[:, None] - ex[None, :], y - ey[None, :])
        theta = k * dist + phase[None, :]
        re = (amp * np.cos(theta)).sum(axis=1)
        im = (amp * np.sin(theta)).sum(axis=1)
        intensity[py] = re * re + im * im

        if ctx is not None and py % progress_every == 0:
            ctx.report_progress(py / grid_height)

    vmin = float(intensity.min())
    vmax = float(intensity.max())
    if normalize and vmax > vmin:
        intensity = ((intensity.astype(np.float64) - vmin) / (vmax - vmin)).astype(np.float32)
        vmin, vmax = 0.0, 1.0

    return SimulationField(
        intensity=intensity.reshape(-1),
        width=grid_width,
        height=grid_height,
        min=vmin,
        max=vmax,
        compute_time_ms=(time.perf_counter() - started) * 1000,
    )


def resolve_wavelength(
    descriptors: Sequence[ArrayDescriptor],
    medium: Optional[str],
    wavelength: Optional[float] = None,
    frequency: Optional[float] = None,
) -> float:
    if wavelength:
        return float(wavelength)
    if frequency:
        return wavelength_for(float(frequency), medium)
    for descriptor in descriptors:
        if descriptor.enabled:
            return descriptor.wavelength(medium)
    raise JobValidationError("No wavelength, frequency or enabled array to derive one from")


def simulate(
    *,
    grid: Mapping,
    field_size: Mapping,
    descriptors: Optional[Sequence[ArrayDescriptor]] = None,
    elements: Optional[Sequence[RadiatingElement]] = None,
    medium: Optional[str] = DEFAULT_MEDIUM,
    normalize: bool = False,
    wavelength: Optional[float] = None,
    frequency: Optional[float] = None,
    ctx=None,
) -> SimulationField:
    """Expand enabled descriptors (or take raw elements) and simulate the field."""
    grid_w, grid_h = _grid_extent(grid, "grid")
    field_w, field_h = _grid_extent(field_size, "field_size")

    descriptors = list(descriptors or [])
    if descriptors:
        radiating: List[RadiatingElement] = []
        for descriptor in descriptors:
            if descriptor.enabled:
                radiating.extend(expand_elements(descriptor, medium))
    else:
        radiating = list(elements or [])

    basis = resolve_wavelength(descriptors, medium, wavelength, frequency)
    logger.debug(
        "beam_simulation_started",
        elements=len(radiating),
        grid=f"{grid_w}x{grid_h}",
        wavelength=basis,
        medium=medium,
    )
    return simulate_field(
        radiating,
        basis,
        int(grid_w),
        int(grid_h),
        float(field_w),
        float(field_h),
        normalize=normalize,
        ctx=ctx,
    )


def array_factor(descriptor: ArrayDescriptor, medium: Optional[str], theta_deg: float) -> float:
    """|sin(N psi / 2) / (N sin(psi / 2))| with psi = k d (sin theta - sin theta0)."""
    k = descriptor.wave_number(medium)
    n = descriptor.element_count
    psi = k * descriptor.pitch * (math.sin(math.radians(theta_deg)) - math.sin(math.radians(descriptor.steering_angle)))
    half = psi / 2
    if abs(half) < 1e-10:
        return 1.0
    return abs(math.sin(n * half) / (n * math.sin(half)))


def array_factor_db(descriptor: ArrayDescriptor, medium: Optional[str], theta_deg: float,
                    min_db: float = DEFAULT_MIN_DB) -> float:
    af = array_factor(descriptor, medium, theta_deg)
    if af <= 0:
        return min_db
    return max(min_db, 20 * math.log10(af))


def beam_pattern(descriptor: ArrayDescriptor, medium: Optional[str] = DEFAULT_MEDIUM,
                 angle_resolution: float = 1.0) -> List[Dict[str, Any]]:
    if not angle_resolution or angle_resolution <= 0:
        raise JobValidationError(f"Invalid angle resolution: {angle_resolution}")
    pattern = []
    steps = int(math.floor(360.0 / angle_resolution + 1e-9))
    for i in range(steps + 1):
        angle = -180.0 + i * angle_resolution
        pattern.append({
            "angle": angle,
            "magnitude": array_factor(descriptor, medium, angle),
            "db": array_factor_db(descriptor, medium, angle),
        })
    return pattern
