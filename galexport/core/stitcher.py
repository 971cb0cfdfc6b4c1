"""Vertical composition of gallery pages into size-bounded chunks.

All pages share one width. The logical result is a single tall strip that is
cut into as few chunks as the format limits allow; a page may straddle a chunk
boundary, in which case its remaining slice continues at the top of the next
chunk. Resizing, pasting and encoding run in worker threads.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from PIL import Image

from galexport.core.formats import FormatConfig
from galexport.core.image_urls import ImageEntry
from galexport.core.raster import DecodedImage, RasterOutput, encode_raster, new_canvas, paste


logger = logging.getLogger(__name__)

LoadImage = Callable[[ImageEntry], Awaitable[DecodedImage | None]]


@dataclass(frozen=True)
class CompositeLayout:
    width_scale: float
    scaled_width: int
    chunk_height: int
    total_height: int
    total_chunks: int
    draw_sizes: list[tuple[int, int] | None]

    def chunk_extent(self, chunk_index: int) -> int:
        return max(0, min(self.chunk_height, self.total_height - chunk_index * self.chunk_height))


def plan_composite(dimensions: list[tuple[int, int] | None], config: FormatConfig) -> CompositeLayout | None:
    known = [size for size in dimensions if size and size[0] > 0 and size[1] > 0]
    if not known:
        return None

    combined_width = max(1, max(width for width, _ in known))
    width_scale = min(1.0, config.max_dimension / combined_width)
    scaled_width = max(1, round(combined_width * width_scale))
    chunk_height = max(1, min(config.max_dimension, config.max_pixels // scaled_width))

    draw_sizes: list[tuple[int, int] | None] = []
    for size in dimensions:
        if not size or size[0] <= 0 or size[1] <= 0:
            draw_sizes.append(None)
            continue
        draw_sizes.append((max(1, round(size[0] * width_scale)), max(1, round(size[1] * width_scale))))

    total_height = sum(size[1] for size in draw_sizes if size)
    return CompositeLayout(
        width_scale=width_scale,
        scaled_width=scaled_width,
        chunk_height=chunk_height,
        total_height=total_height,
        total_chunks=max(1, math.ceil(total_height / chunk_height)),
        draw_sizes=draw_sizes,
    )


def combined_file_name(label: str, extension: str, chunk_index: int, total_chunks: int) -> str:
    if total_chunks > 1:
        return f"{label}-combined-part-{chunk_index + 1}.{extension}"
    return f"{label}-combined.{extension}"


class CompositeStitcher:
    def __init__(self, config: FormatConfig, label: str, load_image: LoadImage):
        self.config = config
        self.label = label
        self.load_image = load_image
        self.pages_drawn = 0

    async def combine(self, entries: list[ImageEntry]) -> list[RasterOutput]:
        return [output async for output in self.iter_combined(entries)]

    async def _measure(
        self, entries: list[ImageEntry], preloaded: dict[int, DecodedImage]
    ) -> list[tuple[int, int] | None]:
        dimensions: list[tuple[int, int] | None] = []
        for position, entry in enumerate(entries):
            if entry.has_declared_size:
                dimensions.append((entry.width, entry.height))
                continue
            decoded = await self.load_image(entry)
            if decoded is None:
                logger.warning(f"[Stitcher] Page {entry.page_number} unavailable, leaving it out")
                dimensions.append(None)
                continue
            preloaded[position] = decoded
            dimensions.append((decoded.width, decoded.height))
        return dimensions

    def _draw_slice(
        self,
        canvas: Image.Image,
        decoded: DecodedImage,
        draw_size: tuple[int, int],
        consumed: int,
        slice_height: int,
        x_offset: int,
        y_offset: int,
    ) -> None:
        draw_width, draw_height = draw_size
        source = decoded.image
        if draw_width == decoded.width and draw_height == decoded.height:
            piece = source.crop((0, consumed, decoded.width, consumed + slice_height))
        else:
            ratio = decoded.height / draw_height
            bottom = min(float(decoded.height), (consumed + slice_height) * ratio)
            box = (0.0, consumed * ratio, float(decoded.width), bottom)
            piece = source.resize((draw_width, slice_height), Image.Resampling.LANCZOS, box=box)
        try:
            paste(canvas, piece, x_offset, y_offset)
        finally:
            piece.close()

    def _flush(self, canvas: Image.Image, chunk_index: int, total_chunks: int) -> RasterOutput | None:
        name = combined_file_name(self.label, self.config.extension, chunk_index, total_chunks)
        data = encode_raster(canvas, self.config)
        if data is None:
            logger.warning(f"[Stitcher] Skipping {name}: encode failed")
            return None
        width, height = canvas.size
        logger.info(f"[Stitcher] Chunk {chunk_index + 1}/{total_chunks} ready ({width}x{height})")
        return RasterOutput(name=name, data=data, mime=self.config.mime, width=width, height=height)

    async def iter_combined(self, entries: list[ImageEntry]) -> AsyncIterator[RasterOutput]:
        preloaded: dict[int, DecodedImage] = {}
        canvas: Image.Image | None = None
        self.pages_drawn = 0
        try:
            dimensions = await self._measure(entries, preloaded)
            layout = plan_composite(dimensions, self.config)
            if layout is None or layout.total_height <= 0:
                return

            chunk_index = 0
            canvas = new_canvas(layout.scaled_width, layout.chunk_extent(0), self.config)
            filled = 0

            for position, entry in enumerate(entries):
                draw_size = layout.draw_sizes[position]
                if draw_size is None:
                    continue

                decoded = preloaded.pop(position, None)
                if decoded is None:
                    decoded = await self.load_image(entry)
                if decoded is None:
                    # geometry is already committed, so the page becomes a blank band
                    logger.warning(f"[Stitcher] Page {entry.page_number} failed to load, drawing blank band")

                try:
                    x_offset = (layout.scaled_width - draw_size[0]) // 2
                    remaining = draw_size[1]
                    consumed = 0
                    while remaining > 0:
                        if filled >= canvas.height:
                            output = await asyncio.to_thread(self._flush, canvas, chunk_index, layout.total_chunks)
                            canvas.close()
                            canvas = None
                            if output is not None:
                                yield output
                            chunk_index += 1
                            canvas = new_canvas(layout.scaled_width, layout.chunk_extent(chunk_index), self.config)
                            filled = 0

                        slice_height = min(remaining, canvas.height - filled)
                        if decoded is not None:
                            await asyncio.to_thread(
                                self._draw_slice, canvas, decoded, draw_size, consumed, slice_height, x_offset, filled
                            )
                        remaining -= slice_height
                        consumed += slice_height
                        filled += slice_height
                finally:
                    if decoded is not None:
                        decoded.release()
                if decoded is not None:
                    self.pages_drawn += 1

            if canvas is not None and filled > 0:
                output = await asyncio.to_thread(self._flush, canvas, chunk_index, layout.total_chunks)
                canvas.close()
                canvas = None
                if output is not None:
                    yield output
        finally:
            if canvas is not None:
                canvas.close()
            for decoded in preloaded.values():
                decoded.release()
            preloaded.clear()
