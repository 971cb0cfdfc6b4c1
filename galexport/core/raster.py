from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import TYPE_CHECKING

from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from galexport.core.formats import FormatConfig


logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
TRANSPARENT = (0, 0, 0, 0)

# decode limit matches the largest export pixel budget
MAX_DECODE_PIXELS = 268_435_456


@dataclass
class RasterOutput:
    name: str
    data: bytes
    mime: str
    width: int = 0
    height: int = 0


class DecodedImage:
    """Owned handle on a decoded raster.

    The pixel buffer is freed by ``release()``; callers release it after the
    last draw that needs it instead of waiting for garbage collection.
    """

    def __init__(self, image: Image.Image):
        self._image: Image.Image | None = image
        self.width, self.height = image.size

    @property
    def image(self) -> Image.Image:
        if self._image is None:
            raise RuntimeError("decoded image already released")
        return self._image

    @property
    def released(self) -> bool:
        return self._image is None

    def release(self) -> None:
        if self._image is not None:
            self._image.close()
            self._image = None

    def __enter__(self) -> "DecodedImage":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def _allow_large_pages() -> None:
    if Image.MAX_IMAGE_PIXELS is not None and Image.MAX_IMAGE_PIXELS < MAX_DECODE_PIXELS:
        Image.MAX_IMAGE_PIXELS = MAX_DECODE_PIXELS


def decode_image(data: bytes) -> DecodedImage | None:
    _allow_large_pages()
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning(f"[Raster] Could not decode image ({len(data)} bytes): {exc}")
        return None

    if image.mode not in ("RGB", "RGBA"):
        converted = image.convert("RGBA" if "A" in image.getbands() or image.mode == "P" else "RGB")
        image.close()
        image = converted
    return DecodedImage(image)


def new_canvas(width: int, height: int, config: FormatConfig) -> Image.Image:
    # JPEG has no alpha channel, so it gets an opaque white background
    if config.extension == "jpg":
        return Image.new("RGB", (width, height), WHITE)
    return Image.new("RGBA", (width, height), TRANSPARENT)


def paste(canvas: Image.Image, tile: Image.Image, x: int, y: int) -> None:
    # transparent canvases take pixels as-is; only the opaque jpeg canvas blends over white
    mask = tile if tile.mode == "RGBA" and canvas.mode != "RGBA" else None
    canvas.paste(tile, (x, y), mask)


def encode_raster(image: Image.Image, config: FormatConfig) -> bytes | None:
    save_kwargs: dict[str, object] = {"format": config.pil_format}
    if config.quality is not None:
        save_kwargs["quality"] = config.quality

    target = image
    if config.extension == "jpg" and image.mode != "RGB":
        target = image.convert("RGB")

    buffer = BytesIO()
    try:
        target.save(buffer, **save_kwargs)
    except (KeyError, OSError, ValueError) as exc:
        logger.warning(f"[Raster] {config.pil_format} encode failed for {image.size[0]}x{image.size[1]}: {exc}")
        return None
    finally:
        if target is not image:
            target.close()

    data = buffer.getvalue()
    return data or None
