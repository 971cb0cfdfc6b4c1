from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from galexport.core.config import Settings
from galexport.runtime.gallery_source import GalleryLoadError, load_gallery, parse_gallery_payload
from galexport.runtime.server_map_resolver import ServerMapResolver


GG_URL = "https://ltn.example.test/gg.js"
GG_PAYLOAD = "var o = 0; switch (g) { case 786: o = 2; break; } b: '1700000000/'"

GALLERY = {
    "id": "123",
    "title": "Sample: Book",
    "files": [
        {"hash": "abcdef123", "name": "01.jpg", "width": 800, "height": 1200, "haswebp": 1, "hasavif": 0},
        {"hash": "", "name": "broken.jpg"},
        {"hash": "00000f0a1", "name": "02.png", "width": 0, "height": 0},
    ],
}


def _settings(**overrides: str) -> Settings:
    return Settings(
        _env_file=None,
        GALEX_GALLERY_BASE_URL="https://ltn.example.test/galleries",
        GALEX_SERVER_MAP_URL=GG_URL,
        GALEX_IMAGE_DOMAIN="example.test",
        **overrides,
    )


def _load(handler, settings: Settings | None = None):
    settings = settings or _settings()

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = ServerMapResolver(settings.server_map_url, client=client)
            return await load_gallery(client, settings, resolver, "123")

    return asyncio.run(scenario())


def _handler(gallery_status: int = 200, gg_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GG_URL:
            return httpx.Response(gg_status, text=GG_PAYLOAD)
        if request.url.path == "/galleries/123.js":
            return httpx.Response(gallery_status, text=f"var galleryinfo = {json.dumps(GALLERY)};")
        return httpx.Response(404)

    return handler


def test_parse_gallery_payload_strips_script_wrapper() -> None:
    info = parse_gallery_payload(f"var galleryinfo = {json.dumps(GALLERY)}\n")

    assert info is not None
    assert info.title == "Sample: Book"
    assert len(info.files) == 3
    assert info.files[0].has_webp is True
    assert info.files[0].has_avif is False
    assert info.files[2].width is None


def test_parse_gallery_payload_rejects_garbage() -> None:
    assert parse_gallery_payload("not a gallery") is None
    assert parse_gallery_payload("var galleryinfo = {broken") is None
    assert parse_gallery_payload('{"files": "nope"}') is None


def test_load_gallery_resolves_entries() -> None:
    gallery = _load(_handler())

    assert gallery.label == "Sample- Book"
    assert [entry.index for entry in gallery.entries] == [0, 1]
    first, second = gallery.entries
    assert first.sources == [
        "https://w3.example.test/1700000000/786/abcdef123.webp",
        "https://j3.example.test/1700000000/786/abcdef123.jpg",
    ]
    assert (first.width, first.height) == (800, 1200)
    assert second.sources == ["https://p1.example.test/1700000000/266/00000f0a1.png"]
    assert not second.has_declared_size


def test_load_gallery_wraps_sources_in_relay() -> None:
    settings = _settings(GALEX_RELAY_BASE_URL="https://relay.example.test/")

    gallery = _load(_handler(), settings)

    source = gallery.entries[1].sources[0]
    assert source.startswith("https://relay.example.test/api/gallery-image?url=https%3A%2F%2Fp1.example.test")
    assert source.endswith("&gid=123")


def test_load_gallery_missing_metadata_is_404() -> None:
    with pytest.raises(GalleryLoadError) as excinfo:
        _load(_handler(gallery_status=404))

    assert excinfo.value.status_code == 404


def test_load_gallery_without_servers_is_502() -> None:
    with pytest.raises(GalleryLoadError) as excinfo:
        _load(_handler(gg_status=500))

    assert excinfo.value.status_code == 502
