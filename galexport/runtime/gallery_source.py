from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from galexport.core.config import Settings
from galexport.core.image_urls import ImageEntry, build_image_entries
from galexport.core.models import GalleryInfo
from galexport.core.packaging import sanitize_file_name
from galexport.core.server_map import ServerMap
from galexport.runtime.server_map_resolver import ServerMapResolver


logger = logging.getLogger(__name__)


class GalleryLoadError(RuntimeError):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class LoadedGallery:
    gallery_id: str
    info: GalleryInfo
    server_map: ServerMap
    entries: list[ImageEntry]

    @property
    def label(self) -> str:
        fallback = f"gallery-{self.gallery_id}"
        return sanitize_file_name(self.info.title or fallback) or fallback


def parse_gallery_payload(payload: str) -> GalleryInfo | None:
    start = payload.find("{")
    end = payload.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        return GalleryInfo.model_validate(json.loads(payload[start : end + 1]))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning(f"[Gallery] Unparseable metadata payload: {exc}")
        return None


async def fetch_gallery_info(client: httpx.AsyncClient, settings: Settings, gallery_id: str) -> GalleryInfo | None:
    url = f"{settings.gallery_base_url.rstrip('/')}/{quote(gallery_id, safe='')}.js"
    try:
        response = await client.get(url, headers={"Cache-Control": "no-cache"})
    except httpx.HTTPError as exc:
        logger.warning(f"[Gallery] {gallery_id} metadata fetch failed: {exc}")
        return None
    if not response.is_success:
        logger.warning(f"[Gallery] {gallery_id} metadata answered HTTP {response.status_code}")
        return None
    return parse_gallery_payload(response.text)


async def load_gallery(
    client: httpx.AsyncClient,
    settings: Settings,
    resolver: ServerMapResolver,
    gallery_id: str,
) -> LoadedGallery:
    info, server_map = await asyncio.gather(
        fetch_gallery_info(client, settings, gallery_id),
        resolver.resolve(),
    )
    if info is None:
        raise GalleryLoadError(f"Gallery {gallery_id} metadata could not be fetched", status_code=404)
    if server_map is None:
        raise GalleryLoadError("Image servers could not be resolved", status_code=502)

    entries = build_image_entries(
        info.files,
        server_map,
        settings.image_domain,
        relay_base_url=settings.relay_base_url,
        gallery_id=gallery_id,
    )
    return LoadedGallery(gallery_id=gallery_id, info=info, server_map=server_map, entries=entries)
