"""
Spectral Mixer

Composes several equally sized luminance images in the frequency domain.
Each frequency bin is classified as inside or outside a region mask centred
on the DC term, the matching per-slot weight pair is applied, and the
weighted spectra are combined with one of two algebras:

- real-imag: real and imaginary planes are combined independently
- mag-phase: magnitudes and phases are combined independently, so one image
  can contribute its magnitude and another its phase
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import math

import numpy as np

from wavelab.app.logging_config import get_logger
from wavelab.dsp.pixels import PixelBuffer, round_half_up
from wavelab.dsp.spectrum import dc_unshift
from wavelab.dsp.transform import ComplexField, SpectralTransformer
from wavelab.utils.errors import JobValidationError

logger = get_logger(__name__)

MODES = ("real-imag", "mag-phase")
SHAPES = ("circle", "rect")
MASK_MODES = ("include", "exclude")
BRIGHTNESS_TARGETS = ("spatial", "frequency")

PROGRESS_AFTER_FORWARD = 0.3
PROGRESS_AFTER_MIX = 0.7

ChannelWeight = Tuple[float, float]


@dataclass
class MixImage:
    slot_id: str
    image: PixelBuffer


@dataclass
class RegionMask:
    """Mask geometry as fractions of the image extent."""
    shape: str = "circle"
    mode: str = "include"
    radius: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None

    def __post_init__(self):
        if self.shape not in SHAPES:
            raise JobValidationError(f"Unknown mask shape: {self.shape}")
        if self.mode not in MASK_MODES:
            raise JobValidationError(f"Unknown mask mode: {self.mode}")

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "RegionMask":
        data = data or {}
        return cls(
            shape=data.get("shape", "circle"),
            mode=data.get("mode", "include"),
            radius=data.get("radius"),
            width=data.get("width"),
            height=data.get("height"),
        )


@dataclass(frozen=True)
class ResolvedMask:
    shape: str
    radius_px: float
    width_px: float
    height_px: float
    coverage: float


@dataclass
class Brightness:
    target: str = "spatial"
    value: float = 0.0
    contrast: float = 1.0

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "Brightness":
        data = data or {}
        target = data.get("target", "spatial")
        if target == "ft":
            target = "frequency"
        return cls(target=target, value=data.get("value", 0.0), contrast=data.get("contrast", 1.0))


@dataclass
class MixResult:
    width: int
    height: int
    pixels: np.ndarray
    backend_used: str

    def to_payload(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "pixels": self.pixels,
            "backend_used": self.backend_used,
        }


def resolve_mask(mask: RegionMask, width: int, height: int) -> ResolvedMask:
    radius_px = (1.0 if mask.radius is None else mask.radius) * min(width, height)
    width_px = (1.0 if mask.width is None else mask.width) * width
    height_px = (1.0 if mask.height is None else mask.height) * height
    if mask.shape == "circle":
        coverage = min(1.0, math.pi * radius_px * radius_px / (width * height))
    else:
        coverage = min(1.0, width_px * height_px / (width * height))
    return ResolvedMask(mask.shape, radius_px, width_px, height_px, coverage)


def inside_mask(resolved: ResolvedMask, width: int, height: int, mode: str = "include") -> np.ndarray:
    """Boolean (height, width) map of bins inside the mask, in native FFT layout."""
    # Where dc_shift places the zero-frequency bin.
    cx = (width - width // 2) % width
    cy = (height - height // 2) % height
    dy, dx = np.meshgrid(np.arange(height) - cy, np.arange(width) - cx, indexing="ij")

    if resolved.shape == "circle":
        inside = np.sqrt(dx * dx + dy * dy) <= resolved.radius_px
    else:
        inside = (np.abs(dx) <= resolved.width_px / 2) & (np.abs(dy) <= resolved.height_px / 2)

    if mode == "exclude":
        inside = ~inside
    return dc_unshift(inside)


def validate_mix(images: Sequence[MixImage], mode: str, brightness: Brightness) -> Tuple[int, int]:
    if not images:
        raise JobValidationError("No images provided")
    width, height = images[0].image.width, images[0].image.height
    seen = set()
    for item in images:
        if item.slot_id in seen:
            raise JobValidationError(f"Duplicate slot id: {item.slot_id}")
        seen.add(item.slot_id)
        if item.image.width != width or item.image.height != height:
            raise JobValidationError("Image dimensions must match")
        if item.image.channels != 1:
            raise JobValidationError(f"Image {item.slot_id} is not a luminance buffer")
    contrast = brightness.contrast
    if contrast is None or not math.isfinite(contrast) or contrast <= 0:
        raise JobValidationError("Invalid contrast")
    if mode not in MODES:
        raise JobValidationError(f"Unknown mixing mode: {mode}")
    if brightness.target not in BRIGHTNESS_TARGETS:
        raise JobValidationError(f"Unknown brightness target: {brightness.target}")
    return width, height


def _weight_planes(
    slot_id: str,
    inside: np.ndarray,
    inner_weights: Mapping[str, ChannelWeight],
    outer_weights: Mapping[str, ChannelWeight],
) -> Tuple[np.ndarray, np.ndarray]:
    in_w1, in_w2 = inner_weights.get(slot_id, (0.0, 0.0))
    out_w1, out_w2 = outer_weights.get(slot_id, (0.0, 0.0))
    w1 = np.where(inside, float(in_w1), float(out_w1))
    w2 = np.where(inside, float(in_w2), float(out_w2))
    return w1, w2


def combine(
    fields: Dict[str, ComplexField],
    inside: np.ndarray,
    inner_weights: Mapping[str, ChannelWeight],
    outer_weights: Mapping[str, ChannelWeight],
    mode: str,
) -> Tuple[np.ndarray, np.ndarray]:
    """Accumulate the weighted spectra of every slot into one complex field."""
    shape = inside.shape
    if mode == "real-imag":
        acc_re = np.zeros(shape, dtype=np.float64)
        acc_im = np.zeros(shape, dtype=np.float64)
        for slot_id, field in fields.items():
            w1, w2 = _weight_planes(slot_id, inside, inner_weights, outer_weights)
            acc_re += field.real * w1
            acc_im += field.imag * w2
        return acc_re, acc_im

    acc_mag = np.zeros(shape, dtype=np.float64)
    acc_phase = np.zeros(shape, dtype=np.float64)
    for slot_id, field in fields.items():
        w1, w2 = _weight_planes(slot_id, inside, inner_weights, outer_weights)
        re = field.real.astype(np.float64)
        im = field.imag.astype(np.float64)
        acc_mag += np.sqrt(re * re + im * im) * w1
        acc_phase += np.arctan2(im, re) * w2
    return acc_mag * np.cos(acc_phase), acc_mag * np.sin(acc_phase)


def mix(
    images: Sequence[MixImage],
    mask: RegionMask,
    inner_weights: Mapping[str, ChannelWeight],
    outer_weights: Mapping[str, ChannelWeight],
    mode: str,
    brightness: Brightness,
    transformer: SpectralTransformer,
    ctx=None,
) -> MixResult:
    width, height = validate_mix(images, mode, brightness)
    value = min(255.0, max(-255.0, float(brightness.value)))
    contrast = min(10.0, max(0.01, float(brightness.contrast)))

    fields: Dict[str, ComplexField] = {}
    for item in images:
        if ctx is not None:
            ctx.raise_if_cancelled()
        fields[item.slot_id] = transformer.forward(item.image)

    if ctx is not None:
        ctx.raise_if_cancelled()
        ctx.report_progress(PROGRESS_AFTER_FORWARD)

    template = next(iter(fields.values()))
    resolved = resolve_mask(mask, template.width, template.height)
    inside = inside_mask(resolved, template.width, template.height, mask.mode)
    acc_re, acc_im = combine(fields, inside, inner_weights, outer_weights, mode)
    mixed = ComplexField(
        width=template.width,
        height=template.height,
        real=acc_re.astype(np.float32),
        imag=acc_im.astype(np.float32),
        source_width=width,
        source_height=height,
    )

    if ctx is not None:
        ctx.raise_if_cancelled()
        ctx.report_progress(PROGRESS_AFTER_MIX)

    spatial = transformer.inverse(mixed).astype(np.float64)
    if brightness.target == "spatial":
        spatial = (spatial + value) * contrast
    pixels = np.clip(round_half_up(spatial), 0, 255).astype(np.uint8)

    if ctx is not None:
        ctx.raise_if_cancelled()

    logger.debug(
        "mix_completed",
        images=len(images),
        mode=mode,
        mask_shape=resolved.shape,
        coverage=round(resolved.coverage, 4),
        backend=transformer.backend_used,
    )
    return MixResult(width=width, height=height, pixels=pixels.reshape(-1), backend_used=transformer.backend_used)


def parse_weights(raw: Optional[Mapping]) -> Dict[str, ChannelWeight]:
    """{slot_id: [w1, w2]} or {slot_id: {"w1": .., "w2": ..}} to {slot_id: (w1, w2)}."""
    weights: Dict[str, ChannelWeight] = {}
    for slot_id, pair in (raw or {}).items():
        if isinstance(pair, Mapping):
            w1, w2 = pair.get("w1", 0.0), pair.get("w2", 0.0)
        else:
            values: List[float] = list(pair)
            if len(values) != 2:
                raise JobValidationError(f"Weight for slot {slot_id} must be a (w1, w2) pair")
            w1, w2 = values
        if not (math.isfinite(float(w1)) and math.isfinite(float(w2))):
            raise JobValidationError(f"Weight for slot {slot_id} must be finite")
        weights[str(slot_id)] = (float(w1), float(w2))
    return weights
