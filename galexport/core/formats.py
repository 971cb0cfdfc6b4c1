from __future__ import annotations

import logging
from dataclasses import dataclass

from galexport.core.models import ExportFormat
from galexport.core.raster import MAX_DECODE_PIXELS, encode_raster, new_canvas


logger = logging.getLogger(__name__)

DEFAULT_MAX_PIXELS = MAX_DECODE_PIXELS


@dataclass(frozen=True)
class FormatConfig:
    format: ExportFormat
    mime: str
    extension: str
    pil_format: str
    quality: int | None
    max_dimension: int
    max_pixels: int


IMAGE_EXPORT_CONFIG: dict[ExportFormat, FormatConfig] = {
    ExportFormat.PNG: FormatConfig(
        format=ExportFormat.PNG,
        mime="image/png",
        extension="png",
        pil_format="PNG",
        quality=None,
        max_dimension=16384,
        max_pixels=DEFAULT_MAX_PIXELS,
    ),
    ExportFormat.JPG: FormatConfig(
        format=ExportFormat.JPG,
        mime="image/jpeg",
        extension="jpg",
        pil_format="JPEG",
        quality=92,
        max_dimension=16384,
        max_pixels=DEFAULT_MAX_PIXELS,
    ),
    ExportFormat.WEBP: FormatConfig(
        format=ExportFormat.WEBP,
        mime="image/webp",
        extension="webp",
        pil_format="WEBP",
        quality=92,
        max_dimension=16383,
        max_pixels=DEFAULT_MAX_PIXELS,
    ),
    ExportFormat.AVIF: FormatConfig(
        format=ExportFormat.AVIF,
        mime="image/avif",
        extension="avif",
        pil_format="AVIF",
        quality=80,
        max_dimension=16384,
        max_pixels=DEFAULT_MAX_PIXELS,
    ),
}

FALLBACK_FORMAT = ExportFormat.PNG


def probe_format(requested: ExportFormat | str) -> FormatConfig:
    """Return the config for ``requested`` if Pillow can actually encode it.

    A white 1x1 raster is encoded with the requested settings. When nothing
    comes back the lossless fallback is used instead, so later size limits
    are computed for the format that will really be written.
    """
    fallback = IMAGE_EXPORT_CONFIG[FALLBACK_FORMAT]
    try:
        base = IMAGE_EXPORT_CONFIG[ExportFormat(requested)]
    except (KeyError, ValueError):
        return fallback

    canvas = new_canvas(1, 1, base)
    try:
        encoded = encode_raster(canvas, base)
    finally:
        canvas.close()

    if encoded is None:
        logger.info(f"[Formats] {base.extension} encoder unavailable, falling back to {fallback.extension}")
        return fallback
    return base
