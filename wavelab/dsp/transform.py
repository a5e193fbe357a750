"""
Spectral Transform Engine

Row-column separable 2D discrete Fourier transform with power-of-two padding.
Two numerically equivalent backends implement the TransformBackend protocol:

- NativeBackend: compiled pocketfft kernels via scipy.fft
- PortableBackend: iterative radix-2 Cooley-Tukey written against numpy

SpectralTransformer picks one per job and falls back to the portable backend
whenever the native one is unavailable, oversized for the job, or fails.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, Union

import numpy as np
import scipy.fft

from wavelab.app.logging_config import get_logger
from wavelab.dsp.pixels import PixelBuffer
from wavelab.utils.errors import BackendError, JobValidationError

logger = get_logger(__name__)

NATIVE = "native"
PORTABLE = "portable"
BACKEND_NAMES = (NATIVE, PORTABLE)


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n. Degenerate sizes (<= 1) pad to 2."""
    if n <= 1:
        return 2
    return 1 << (n - 1).bit_length()


@dataclass
class ComplexField:
    """
    Spectrum produced by a forward transform.

    real/imag have shape (height, width) at the padded transform extent;
    source_width/source_height record the extent the inverse crops back to.
    """
    width: int
    height: int
    real: np.ndarray
    imag: np.ndarray
    source_width: int
    source_height: int

    def __post_init__(self):
        expected = (self.height, self.width)
        if self.real.shape != expected or self.imag.shape != expected:
            raise JobValidationError(
                f"Complex field planes must have shape {expected}, "
                f"got {self.real.shape} and {self.imag.shape}"
            )

    @property
    def is_padded(self) -> bool:
        return (self.width, self.height) != (self.source_width, self.source_height)

    def cropped(self) -> "ComplexField":
        """The field restricted to its source extent (padding discarded)."""
        if not self.is_padded:
            return self
        h, w = self.source_height, self.source_width
        return ComplexField(
            width=w,
            height=h,
            real=np.ascontiguousarray(self.real[:h, :w]),
            imag=np.ascontiguousarray(self.imag[:h, :w]),
            source_width=w,
            source_height=h,
        )


class TransformBackend(Protocol):
    name: str

    def fft2d(self, re: np.ndarray, im: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        ...

    def ifft2d(self, re: np.ndarray, im: np.ndarray) -> np.ndarray:
        ...


class NativeBackend:
    """Separable transform on scipy's compiled kernels."""

    name = NATIVE

    def fft2d(self, re, im):
        z = np.asarray(re, dtype=np.float64) + 1j * np.asarray(im, dtype=np.float64)
        rows = scipy.fft.fft(z, axis=1)
        out = scipy.fft.fft(rows, axis=0)
        return out.real.astype(np.float32), out.imag.astype(np.float32)

    def ifft2d(self, re, im):
        z = np.asarray(re, dtype=np.float64) + 1j * np.asarray(im, dtype=np.float64)
        rows = scipy.fft.ifft(z, axis=1)
        out = scipy.fft.ifft(rows, axis=0)
        return out.real.astype(np.float32)


def _bit_reversal(n: int) -> np.ndarray:
    bits = n.bit_length() - 1
    idx = np.arange(n)
    rev = np.zeros(n, dtype=np.int64)
    for bit in range(bits):
        rev |= ((idx >> bit) & 1) << (bits - 1 - bit)
    return rev


def _radix2_rows(z: np.ndarray, inverse: bool) -> np.ndarray:
    """1D transform of every row of z; row length must be a power of two."""
    rows, n = z.shape
    if n == 1:
        return z.copy()
    if not is_power_of_two(n):
        raise BackendError(f"portable backend needs power-of-two lengths, got {n}")

    sign = 1.0 if inverse else -1.0
    a = z[:, _bit_reversal(n)]
    size = 2
    while size <= n:
        half = size // 2
        twiddle = np.exp(sign * 2j * np.pi * np.arange(half) / size)
        blocks = a.reshape(rows, n // size, size)
        even = blocks[:, :, :half]
        odd = blocks[:, :, half:] * twiddle
        a = np.concatenate((even + odd, even - odd), axis=2).reshape(rows, n)
        size *= 2

    if inverse:
        a = a / n
    return a


class PortableBackend:
    """Separable transform on numpy-only radix-2 butterflies."""

    name = PORTABLE

    def fft2d(self, re, im):
        z = np.asarray(re, dtype=np.float64) + 1j * np.asarray(im, dtype=np.float64)
        rows = _radix2_rows(z, inverse=False)
        out = _radix2_rows(rows.T, inverse=False).T
        return out.real.astype(np.float32), out.imag.astype(np.float32)

    def ifft2d(self, re, im):
        z = np.asarray(re, dtype=np.float64) + 1j * np.asarray(im, dtype=np.float64)
        rows = _radix2_rows(z, inverse=True)
        out = _radix2_rows(rows.T, inverse=True).T
        return out.real.astype(np.float32)


def select_backend(
    preference: Optional[str],
    element_count: int,
    capabilities,
    max_elements: int,
) -> TransformBackend:
    """Resolve a backend preference against capabilities and the native size limit."""
    preference = preference or NATIVE
    if preference not in BACKEND_NAMES:
        raise JobValidationError(f"Unknown transform backend: {preference}")
    if preference == PORTABLE:
        return PortableBackend()
    if capabilities is not None and not capabilities.native_fft:
        logger.info("native_backend_unavailable", fallback=PORTABLE,
                    reason=capabilities.native_fft_error)
        return PortableBackend()
    if element_count > max_elements:
        logger.info("native_backend_oversize", fallback=PORTABLE,
                    element_count=element_count, max_elements=max_elements)
        return PortableBackend()
    return NativeBackend()


def _as_samples(image: Union[PixelBuffer, np.ndarray]) -> np.ndarray:
    if isinstance(image, PixelBuffer):
        if image.channels != 1:
            raise JobValidationError("Spectral transform expects a 1-channel luminance buffer")
        return image.as_2d().astype(np.float32)
    samples = np.asarray(image, dtype=np.float32)
    if samples.ndim != 2:
        raise JobValidationError(f"Spectral transform expects 2D samples, got {samples.ndim}D")
    return samples


def forward(image: Union[PixelBuffer, np.ndarray], backend: TransformBackend) -> ComplexField:
    """Pad to power-of-two extents and run the row pass, then the column pass."""
    samples = _as_samples(image)
    height, width = samples.shape
    if width == 0 or height == 0:
        raise JobValidationError("Cannot transform an empty image")
    padded_w = next_power_of_two(width)
    padded_h = next_power_of_two(height)

    padded = np.zeros((padded_h, padded_w), dtype=np.float32)
    padded[:height, :width] = samples
    re, im = backend.fft2d(padded, np.zeros_like(padded))
    return ComplexField(
        width=padded_w,
        height=padded_h,
        real=re,
        imag=im,
        source_width=width,
        source_height=height,
    )


def inverse(field: ComplexField, backend: TransformBackend) -> np.ndarray:
    """Inverse transform, cropped back to the field's source extent."""
    out = backend.ifft2d(field.real, field.imag)
    return np.ascontiguousarray(out[:field.source_height, :field.source_width])


class SpectralTransformer:
    """
    Per-job transform front end.

    Holds the backend chosen at job setup and swaps to the portable backend
    for the remainder of the job if the native one raises. backend_used
    always names the backend that produced the latest result.
    """

    def __init__(self, backend: TransformBackend):
        self.backend = backend

    @classmethod
    def for_job(cls, preference: Optional[str], element_count: int, capabilities, max_elements: int):
        return cls(select_backend(preference, element_count, capabilities, max_elements))

    @property
    def backend_used(self) -> str:
        return self.backend.name

    def _fallback(self, error: Exception) -> None:
        if self.backend.name == PORTABLE:
            raise BackendError(f"portable transform failed: {error}") from error
        logger.warning("native_backend_failed", error=f"{type(error).__name__}: {error}",
                       fallback=PORTABLE)
        self.backend = PortableBackend()

    def forward(self, image: Union[PixelBuffer, np.ndarray]) -> ComplexField:
        try:
            return forward(image, self.backend)
        except JobValidationError:
            raise
        except Exception as e:
            self._fallback(e)
        return forward(image, self.backend)

    def inverse(self, field: ComplexField) -> np.ndarray:
        try:
            return inverse(field, self.backend)
        except JobValidationError:
            raise
        except Exception as e:
            self._fallback(e)
        return inverse(field, self.backend)
