"""
Pixel Preprocessor

Turns encoded image bytes or raw RGBA buffers into single-channel luminance
buffers, downscaling anything larger than the configured maximum dimension.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from wavelab.app.logging_config import get_logger
from wavelab.utils.errors import DecodeError, JobValidationError

logger = get_logger(__name__)

LUMA_WEIGHTS = (0.299, 0.587, 0.114)
DEFAULT_MAX_DIMENSION = 1024


def round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


@dataclass
class PixelBuffer:
    """8-bit samples, row-major, `channels` interleaved values per pixel."""
    width: int
    height: int
    channels: int
    samples: np.ndarray

    def __post_init__(self):
        if self.channels not in (1, 4):
            raise JobValidationError(f"Unsupported channel count: {self.channels}")
        if self.width < 0 or self.height < 0:
            raise JobValidationError("Image dimensions must be non-negative")
        samples = np.asarray(self.samples)
        expected = self.width * self.height * self.channels
        if samples.size != expected:
            raise JobValidationError(
                f"Buffer holds {samples.size} samples, expected {expected} "
                f"({self.width}x{self.height}x{self.channels})"
            )
        self.samples = np.ascontiguousarray(samples.reshape(-1), dtype=np.uint8)

    @classmethod
    def luminance(cls, pixels, width: int, height: int) -> "PixelBuffer":
        return cls(width=int(width), height=int(height), channels=1, samples=np.asarray(pixels))

    @classmethod
    def rgba(cls, pixels, width: int, height: int) -> "PixelBuffer":
        return cls(width=int(width), height=int(height), channels=4, samples=np.asarray(pixels))

    def as_2d(self) -> np.ndarray:
        if self.channels != 1:
            raise JobValidationError("Only luminance buffers have a 2D view")
        return self.samples.reshape(self.height, self.width)


@dataclass
class DecodedImage:
    image: PixelBuffer
    was_downscaled: bool
    original_width: int
    original_height: int

    def to_payload(self) -> dict:
        return {
            "width": self.image.width,
            "height": self.image.height,
            "pixels": self.image.samples,
            "was_downscaled": self.was_downscaled,
            "original_size": {"width": self.original_width, "height": self.original_height},
        }


def to_luminance(buffer: PixelBuffer) -> PixelBuffer:
    """0.299 R + 0.587 G + 0.114 B, rounded half up; alpha is ignored."""
    if buffer.channels == 1:
        return buffer
    rgba = buffer.samples.reshape(-1, 4).astype(np.float64)
    r, g, b = LUMA_WEIGHTS
    gray = round_half_up(r * rgba[:, 0] + g * rgba[:, 1] + b * rgba[:, 2])
    return PixelBuffer.luminance(np.clip(gray, 0, 255).astype(np.uint8), buffer.width, buffer.height)


def bounded_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Fit (width, height) inside max_dimension, keeping the aspect ratio."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = max_dimension / max(width, height)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def validate_encoded(data: bytes, mime_type: Optional[str], *, max_bytes: int,
                     supported_mime_types: Sequence[str]) -> None:
    if not data or not mime_type:
        raise JobValidationError("Missing file buffer or type")
    if mime_type not in supported_mime_types:
        raise JobValidationError(f"Unsupported file type: {mime_type}")
    if len(data) > max_bytes:
        raise JobValidationError(f"File exceeds {max_bytes // (1024 * 1024)}MB limit")


def _resize_to_luminance(rgba_img: Image.Image, target_size: Optional[Tuple[int, int]],
                         max_dimension: int, token=None) -> DecodedImage:
    original_width, original_height = rgba_img.size
    if target_size is not None:
        target_w, target_h = (int(v) for v in target_size)
        if target_w < 1 or target_h < 1:
            raise JobValidationError(f"Invalid target size: {target_w}x{target_h}")
    else:
        target_w, target_h = bounded_size(original_width, original_height, max_dimension)

    was_downscaled = target_w * target_h < original_width * original_height
    if (target_w, target_h) != (original_width, original_height):
        rgba_img = rgba_img.resize((target_w, target_h), Image.Resampling.LANCZOS)
        if was_downscaled:
            logger.info(
                "image_downscaled",
                original=f"{original_width}x{original_height}",
                target=f"{target_w}x{target_h}",
            )

    if token is not None:
        token.raise_if_cancelled()

    rgba = np.asarray(rgba_img, dtype=np.uint8)
    gray = to_luminance(PixelBuffer.rgba(rgba, target_w, target_h))
    return DecodedImage(
        image=gray,
        was_downscaled=was_downscaled,
        original_width=original_width,
        original_height=original_height,
    )


def decode_image(
    data: bytes,
    mime_type: str,
    *,
    target_size: Optional[Tuple[int, int]] = None,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    max_bytes: int = 10 * 1024 * 1024,
    supported_mime_types: Sequence[str] = ("image/png", "image/jpeg", "image/jpg", "image/bmp", "image/tiff"),
    token=None,
) -> DecodedImage:
    """
    Decode encoded bytes with Pillow, resize, and convert to luminance.

    An explicit target_size wins; otherwise images larger than max_dimension
    are downscaled. The cancellation token is checked after decoding and
    after resizing.
    """
    validate_encoded(data, mime_type, max_bytes=max_bytes, supported_mime_types=supported_mime_types)

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            rgba_img = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Image load failed: {e}") from e

    if token is not None:
        token.raise_if_cancelled()

    return _resize_to_luminance(rgba_img, target_size, max_dimension, token)


def preprocess_rgba(
    buffer: PixelBuffer,
    *,
    target_size: Optional[Tuple[int, int]] = None,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    token=None,
) -> DecodedImage:
    """Same sizing and luminance rules as decode_image, for an already decoded RGBA buffer."""
    if buffer.channels != 4:
        raise JobValidationError("Expected an RGBA buffer")
    if buffer.width < 1 or buffer.height < 1:
        raise JobValidationError("Cannot preprocess an empty image")
    rgba_img = Image.fromarray(buffer.samples.reshape(buffer.height, buffer.width, 4))
    return _resize_to_luminance(rgba_img, target_size, max_dimension, token)
