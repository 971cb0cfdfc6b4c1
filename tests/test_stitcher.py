from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from io import BytesIO

from PIL import Image

from galexport.core import stitcher as stitcher_module
from galexport.core.formats import IMAGE_EXPORT_CONFIG
from galexport.core.image_urls import ImageEntry
from galexport.core.models import ExportFormat
from galexport.core.raster import DecodedImage
from galexport.core.stitcher import CompositeStitcher, combined_file_name, plan_composite


PNG = IMAGE_EXPORT_CONFIG[ExportFormat.PNG]
COLORS = [(220, 20, 20), (20, 220, 20), (20, 20, 220), (220, 220, 20)]


class _Loader:
    def __init__(self, sizes: list[tuple[int, int] | None]):
        self.sizes = sizes
        self.calls: list[int] = []
        self.handles: list[DecodedImage] = []

    async def __call__(self, entry: ImageEntry) -> DecodedImage | None:
        self.calls.append(entry.index)
        size = self.sizes[entry.index]
        if size is None:
            return None
        decoded = DecodedImage(Image.new("RGB", size, COLORS[entry.index % len(COLORS)]))
        self.handles.append(decoded)
        return decoded


def _entries(sizes: list[tuple[int, int] | None], declared: bool) -> list[ImageEntry]:
    entries = []
    for index, size in enumerate(sizes):
        entry = ImageEntry(index=index, sources=[f"https://i1.example.test/{index}.png"])
        if declared and size:
            entry.width, entry.height = size
        entries.append(entry)
    return entries


def _combine(config, sizes, declared=True, label="book"):
    loader = _Loader(sizes)
    stitcher = CompositeStitcher(config, label, loader)
    outputs = asyncio.run(stitcher.combine(_entries(sizes, declared)))
    return outputs, loader, stitcher


def _decode(data: bytes) -> Image.Image:
    return Image.open(BytesIO(data)).convert("RGB")


def test_three_pages_split_evenly_into_two_chunks() -> None:
    config = replace(PNG, max_dimension=6000, max_pixels=10**9)

    outputs, loader, stitcher = _combine(config, [(100, 4000)] * 3)

    assert [output.name for output in outputs] == ["book-combined-part-1.png", "book-combined-part-2.png"]
    assert [output.height for output in outputs] == [6000, 6000]

    first = _decode(outputs[0].data)
    second = _decode(outputs[1].data)
    assert first.size == (100, 6000)
    assert first.getpixel((50, 3999)) == COLORS[0]
    assert first.getpixel((50, 4000)) == COLORS[1]
    assert second.getpixel((50, 1999)) == COLORS[1]
    assert second.getpixel((50, 2000)) == COLORS[2]

    assert loader.calls == [0, 1, 2]
    assert all(handle.released for handle in loader.handles)
    assert stitcher.pages_drawn == 3


def test_scaled_heights_are_conserved_across_chunks() -> None:
    config = replace(PNG, max_dimension=200, max_pixels=200 * 250)
    sizes = [(300, 500), (150, 333), (300, 701)]

    layout = plan_composite(sizes, config)
    outputs, loader, _ = _combine(config, sizes, declared=False)

    assert layout is not None
    assert layout.scaled_width == 200
    assert layout.chunk_height == 200
    assert [size[1] for size in layout.draw_sizes] == [333, 222, 467]
    assert layout.total_height == 1022
    assert layout.total_chunks == 6

    assert sum(output.height for output in outputs) == 1022
    assert [output.height for output in outputs] == [200, 200, 200, 200, 200, 22]
    assert all(_decode(output.data).size[0] == 200 for output in outputs)

    # dimensions came from the decoded pages, which were reused for drawing
    assert loader.calls == [0, 1, 2]
    assert all(handle.released for handle in loader.handles)


def test_narrow_page_is_centered() -> None:
    config = replace(PNG, max_dimension=1000, max_pixels=10**7)

    outputs, _, _ = _combine(config, [(100, 10), (50, 10)])

    assert [output.name for output in outputs] == ["book-combined.png"]
    composite = Image.open(BytesIO(outputs[0].data)).convert("RGBA")
    assert composite.size == (100, 20)
    assert composite.getpixel((10, 15))[3] == 0
    assert composite.getpixel((50, 15))[:3] == COLORS[1]


def test_unavailable_page_is_left_out() -> None:
    config = replace(PNG, max_dimension=1000, max_pixels=10**7)

    outputs, _, stitcher = _combine(config, [(40, 30), None, (40, 20)], declared=False)

    assert len(outputs) == 1
    assert outputs[0].height == 50
    assert stitcher.pages_drawn == 2


def test_nothing_available_produces_no_output() -> None:
    outputs, _, stitcher = _combine(PNG, [None, None], declared=False)

    assert outputs == []
    assert stitcher.pages_drawn == 0


def test_combined_file_name() -> None:
    assert combined_file_name("book", "webp", 0, 1) == "book-combined.webp"
    assert combined_file_name("book", "webp", 2, 3) == "book-combined-part-3.webp"


def test_semi_transparent_pages_are_copied_exactly() -> None:
    config = replace(PNG, max_dimension=1000, max_pixels=10**7)

    async def load(entry: ImageEntry) -> DecodedImage:
        return DecodedImage(Image.new("RGBA", (4, 4), (200, 100, 50, 128)))

    entries = [ImageEntry(index=0, sources=["https://i1.example.test/0.png"], width=4, height=4)]
    outputs = asyncio.run(CompositeStitcher(config, "book", load).combine(entries))

    composite = Image.open(BytesIO(outputs[0].data))
    assert composite.mode == "RGBA"
    assert composite.getpixel((2, 2)) == (200, 100, 50, 128)


def test_chunks_are_encoded_off_the_event_loop_thread(monkeypatch) -> None:
    config = replace(PNG, max_dimension=10, max_pixels=10**7)
    encode_threads: list[int] = []
    real_encode = stitcher_module.encode_raster

    def recording_encode(image, fmt):
        encode_threads.append(threading.get_ident())
        return real_encode(image, fmt)

    monkeypatch.setattr(stitcher_module, "encode_raster", recording_encode)

    outputs, _, _ = _combine(config, [(10, 8), (10, 8)])

    assert len(outputs) == 2
    assert len(encode_threads) == 2
    assert threading.get_ident() not in encode_threads
