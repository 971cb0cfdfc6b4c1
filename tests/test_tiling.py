from __future__ import annotations

import itertools
from dataclasses import replace
from io import BytesIO

from PIL import Image

from galexport.core.formats import IMAGE_EXPORT_CONFIG
from galexport.core.models import ExportFormat
from galexport.core.raster import DecodedImage, decode_image
from galexport.core.tiling import TilePlan, needs_split, plan_tiles, split_image, tile_file_name


PNG = IMAGE_EXPORT_CONFIG[ExportFormat.PNG]


def _limits(max_dimension: int, max_pixels: int):
    return replace(PNG, max_dimension=max_dimension, max_pixels=max_pixels)


def test_plan_tiles_invariants_hold_across_sizes() -> None:
    sizes = [1, 999, 5000, 16384, 16385, 40000]
    dimensions = [100, 777, 16384]
    pixel_limits = [5000, 1_000_000, 268_435_456]

    for width, height, max_dimension, max_pixels in itertools.product(sizes, sizes, dimensions, pixel_limits):
        plan = plan_tiles(width, height, _limits(max_dimension, max_pixels))

        assert plan.tile_width <= max_dimension
        assert plan.tile_height <= max_dimension
        assert plan.tile_width * plan.tile_height <= max_pixels
        assert plan.cols * plan.tile_width >= width
        assert plan.rows * plan.tile_height >= height


def test_plan_tiles_tiny_pixel_budget() -> None:
    plan = plan_tiles(10, 10, _limits(4, 3))

    assert plan.tile_width * plan.tile_height <= 3
    assert plan.cols * plan.tile_width >= 10
    assert plan.rows * plan.tile_height >= 10


def test_plan_tiles_known_grids() -> None:
    assert plan_tiles(20000, 10000, PNG) == TilePlan(cols=2, rows=1, tile_width=10000, tile_height=10000)
    assert plan_tiles(16384, 16384, PNG) == TilePlan(cols=1, rows=1, tile_width=16384, tile_height=16384)
    assert plan_tiles(16385, 16384, PNG) == TilePlan(cols=2, rows=1, tile_width=8193, tile_height=16384)
    assert plan_tiles(16000, 16000, _limits(16384, 100_000_000)) == TilePlan(
        cols=2, rows=2, tile_width=8000, tile_height=8000
    )


def test_needs_split_checks_both_limits() -> None:
    limits = _limits(100, 5000)

    assert not needs_split(100, 50, limits)
    assert needs_split(101, 10, limits)
    assert needs_split(10, 101, limits)
    assert needs_split(80, 80, limits)


def test_tile_file_name_only_suffixes_multi_tile_plans() -> None:
    single = TilePlan(cols=1, rows=1, tile_width=10, tile_height=10)
    grid = TilePlan(cols=2, rows=3, tile_width=10, tile_height=10)

    assert tile_file_name("book-07", "png", single, 1, 1) == "book-07.png"
    assert tile_file_name("book-07", "png", grid, 3, 2) == "book-07-part-3-2.png"


def _decoded(width: int, height: int) -> DecodedImage:
    image = Image.new("RGB", (width, height), (200, 10, 10))
    image.paste((10, 200, 10), (width // 2, 0, width, height))
    return DecodedImage(image)


def test_split_image_crops_oversized_source_into_tiles() -> None:
    limits = _limits(16, 1_000_000)

    with _decoded(30, 20) as decoded:
        outputs = list(split_image(decoded, limits, "book-01", split=True))

    assert [output.name for output in outputs] == [
        "book-01-part-1-1.png",
        "book-01-part-1-2.png",
        "book-01-part-2-1.png",
        "book-01-part-2-2.png",
    ]
    assert all((output.width, output.height) == (15, 10) for output in outputs)

    left = Image.open(BytesIO(outputs[0].data))
    right = Image.open(BytesIO(outputs[1].data))
    assert left.size == (15, 10)
    assert left.convert("RGB").getpixel((0, 0)) == (200, 10, 10)
    assert right.convert("RGB").getpixel((0, 0)) == (10, 200, 10)


def test_split_image_without_split_keeps_single_output() -> None:
    limits = _limits(16, 1_000_000)

    with _decoded(30, 20) as decoded:
        outputs = list(split_image(decoded, limits, "book-01", split=False))

    assert [output.name for output in outputs] == ["book-01.png"]
    assert Image.open(BytesIO(outputs[0].data)).size == (30, 20)


def test_split_image_clips_edge_tiles() -> None:
    limits = _limits(16, 1_000_000)

    with _decoded(33, 10) as decoded:
        outputs = list(split_image(decoded, limits, "page", split=True))

    assert [(output.width, output.height) for output in outputs] == [(11, 10), (11, 10), (11, 10)]


def test_split_image_keeps_semi_transparent_pixels() -> None:
    with DecodedImage(Image.new("RGBA", (4, 4), (200, 100, 50, 128))) as decoded:
        outputs = list(split_image(decoded, PNG, "page", split=False))

    tile = Image.open(BytesIO(outputs[0].data))
    assert tile.mode == "RGBA"
    assert tile.getpixel((1, 1)) == (200, 100, 50, 128)


def test_page_above_default_decode_limit_is_tiled(monkeypatch) -> None:
    # shrink Pillow's guard so a small page stands in for a 20000x10000 one
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    buffer = BytesIO()
    Image.new("RGB", (200, 100), (10, 20, 30)).save(buffer, format="PNG")

    decoded = decode_image(buffer.getvalue())

    assert decoded is not None
    with decoded:
        outputs = list(split_image(decoded, _limits(128, 128 * 128), "page", split=True))

    assert [output.name for output in outputs] == ["page-part-1-1.png", "page-part-1-2.png"]
    assert [(output.width, output.height) for output in outputs] == [(100, 100), (100, 100)]
