"""
Job handlers executed inside compute workers.

Every handler takes the job's JobContext plus the payload fields as keyword
arguments and returns a picklable dict. Handlers never touch the worker's
queues; progress and cancellation go through the context.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from wavelab.dsp import beam
from wavelab.dsp.histogram import analyze
from wavelab.dsp.mixer import Brightness, MixImage, RegionMask, mix, parse_weights
from wavelab.dsp.pixels import PixelBuffer, decode_image, preprocess_rgba
from wavelab.dsp.transform import SpectralTransformer, next_power_of_two
from wavelab.utils.errors import JobValidationError
from wavelab.utils.ipc_types import JobContext


def _target_size(target_width: Optional[int], target_height: Optional[int]):
    if target_width is None and target_height is None:
        return None
    if target_width is None or target_height is None:
        raise JobValidationError("target_width and target_height must be given together")
    return int(target_width), int(target_height)


def _transformer_for(ctx: JobContext, backend: Optional[str], width: int, height: int) -> SpectralTransformer:
    element_count = next_power_of_two(width) * next_power_of_two(height)
    return SpectralTransformer.for_job(
        backend or ctx.settings.DEFAULT_FFT_BACKEND,
        element_count,
        ctx.capabilities,
        ctx.settings.NATIVE_MAX_ELEMENTS,
    )


def handle_decode_job(
    ctx: JobContext,
    data: Optional[bytes] = None,
    mime_type: Optional[str] = None,
    pixels: Any = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    max_dimension: Optional[int] = None,
) -> Dict[str, Any]:
    settings = ctx.settings
    target_size = _target_size(target_width, target_height)
    max_dimension = max_dimension or settings.MAX_IMAGE_DIMENSION

    if pixels is not None:
        if width is None or height is None:
            raise JobValidationError("Raw pixels need width and height")
        decoded = preprocess_rgba(
            PixelBuffer.rgba(pixels, width, height),
            target_size=target_size,
            max_dimension=max_dimension,
            token=ctx.token,
        )
    else:
        decoded = decode_image(
            data,
            mime_type,
            target_size=target_size,
            max_dimension=max_dimension,
            max_bytes=settings.MAX_IMAGE_BYTES,
            supported_mime_types=settings.SUPPORTED_MIME_TYPES,
            token=ctx.token,
        )
    return decoded.to_payload()


def handle_histogram_job(
    ctx: JobContext,
    pixels: Any,
    width: int,
    height: int,
    component: str = "magnitude",
    backend: Optional[str] = None,
) -> Dict[str, Any]:
    image = PixelBuffer.luminance(pixels, width, height)
    transformer = _transformer_for(ctx, backend, image.width, image.height)

    ctx.raise_if_cancelled()
    field = transformer.forward(image)
    ctx.raise_if_cancelled()
    ctx.report_progress(0.5)

    result = analyze(field, component).to_payload()
    result["backend_used"] = transformer.backend_used
    return result


def _mix_images(images: Sequence[Mapping]) -> List[MixImage]:
    parsed = []
    for i, item in enumerate(images or []):
        try:
            parsed.append(MixImage(
                slot_id=str(item.get("slot_id", i)),
                image=PixelBuffer.luminance(item["pixels"], item["width"], item["height"]),
            ))
        except KeyError as e:
            raise JobValidationError(f"Image {i} is missing field {e}") from e
    return parsed


def handle_mix_job(
    ctx: JobContext,
    images: Sequence[Mapping],
    region_mask: Optional[Mapping] = None,
    inner_weights: Optional[Mapping] = None,
    outer_weights: Optional[Mapping] = None,
    mode: str = "mag-phase",
    brightness: Optional[Mapping] = None,
    backend: Optional[str] = None,
) -> Dict[str, Any]:
    parsed = _mix_images(images)
    if not parsed:
        raise JobValidationError("No images provided")
    first = parsed[0].image
    transformer = _transformer_for(ctx, backend, first.width, first.height)

    result = mix(
        parsed,
        RegionMask.from_dict(region_mask),
        parse_weights(inner_weights),
        parse_weights(outer_weights),
        mode,
        Brightness.from_dict(brightness),
        transformer,
        ctx=ctx,
    )
    return result.to_payload()


def handle_beam_job(
    ctx: JobContext,
    grid: Mapping,
    field_size: Mapping,
    descriptors: Optional[Sequence[Mapping]] = None,
    elements: Optional[Sequence[Mapping]] = None,
    medium: str = beam.DEFAULT_MEDIUM,
    normalize: bool = False,
    wavelength: Optional[float] = None,
    frequency: Optional[float] = None,
) -> Dict[str, Any]:
    result = beam.simulate(
        grid=grid,
        field_size=field_size,
        descriptors=[beam.ArrayDescriptor.from_dict(d) for d in descriptors or []],
        elements=[beam.RadiatingElement.from_dict(e) for e in elements or []],
        medium=medium,
        normalize=normalize,
        wavelength=wavelength,
        frequency=frequency,
        ctx=ctx,
    )
    return result.to_payload()


def handle_beam_pattern_job(
    ctx: JobContext,
    descriptor: Mapping,
    medium: str = beam.DEFAULT_MEDIUM,
    angle_resolution: float = 1.0,
) -> Dict[str, Any]:
    array = beam.ArrayDescriptor.from_dict(descriptor)
    ctx.raise_if_cancelled()
    return {
        "pattern": beam.beam_pattern(array, medium, angle_resolution),
        "wavelength": array.wavelength(medium),
        "aperture": array.aperture,
    }
