from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass

from galexport.core.formats import FormatConfig
from galexport.core.raster import DecodedImage, RasterOutput, encode_raster, new_canvas, paste


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TilePlan:
    cols: int
    rows: int
    tile_width: int
    tile_height: int

    @property
    def tile_count(self) -> int:
        return self.cols * self.rows


def identity_plan(width: int, height: int) -> TilePlan:
    return TilePlan(cols=1, rows=1, tile_width=width, tile_height=height)


def needs_split(width: int, height: int, config: FormatConfig) -> bool:
    return (
        width > config.max_dimension
        or height > config.max_dimension
        or width * height > config.max_pixels
    )


def plan_tiles(width: int, height: int, config: FormatConfig) -> TilePlan:
    max_dimension = config.max_dimension
    max_pixels = config.max_pixels

    cols = max(1, math.ceil(width / max_dimension))
    rows = max(1, math.ceil(height / max_dimension))
    tile_width = math.ceil(width / cols)
    tile_height = math.ceil(height / rows)

    while tile_width * tile_height > max_pixels:
        if tile_width >= tile_height:
            cols += 1
        else:
            rows += 1
        tile_width = math.ceil(width / cols)
        tile_height = math.ceil(height / rows)

    return TilePlan(cols=cols, rows=rows, tile_width=tile_width, tile_height=tile_height)


def iter_tile_boxes(width: int, height: int, plan: TilePlan) -> Iterator[tuple[int, int, tuple[int, int, int, int]]]:
    """Yield ``(row, col, box)`` per tile, rows and cols 1-based."""
    for row in range(plan.rows):
        for col in range(plan.cols):
            left = col * plan.tile_width
            top = row * plan.tile_height
            right = min(left + plan.tile_width, width)
            bottom = min(top + plan.tile_height, height)
            if right <= left or bottom <= top:
                continue
            yield row + 1, col + 1, (left, top, right, bottom)


def tile_file_name(base_name: str, extension: str, plan: TilePlan, row: int, col: int) -> str:
    suffix = f"-part-{row}-{col}" if plan.tile_count > 1 else ""
    return f"{base_name}{suffix}.{extension}"


def split_image(decoded: DecodedImage, config: FormatConfig, base_name: str, split: bool) -> Iterator[RasterOutput]:
    """Encode ``decoded`` as one output, or as a grid of tiles when split and oversized.

    Tiles that fail to encode are skipped.
    """
    width, height = decoded.width, decoded.height
    if split and needs_split(width, height, config):
        plan = plan_tiles(width, height, config)
    else:
        plan = identity_plan(width, height)

    for row, col, box in iter_tile_boxes(width, height, plan):
        tile_width = box[2] - box[0]
        tile_height = box[3] - box[1]
        canvas = new_canvas(tile_width, tile_height, config)
        try:
            crop = decoded.image.crop(box)
            try:
                paste(canvas, crop, 0, 0)
            finally:
                crop.close()
            data = encode_raster(canvas, config)
        finally:
            canvas.close()

        name = tile_file_name(base_name, config.extension, plan, row, col)
        if data is None:
            logger.warning(f"[Tiles] Skipping {name}: encode failed")
            continue
        yield RasterOutput(name=name, data=data, mime=config.mime, width=tile_width, height=tile_height)
