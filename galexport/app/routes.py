from __future__ import annotations

import logging
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from galexport.core.config import Settings
from galexport.core.models import (
    ExportOutcome,
    ExportRequest,
    GallerySourcesResponse,
    ImageSourcesResponse,
    OutcomeStatus,
)
from galexport.core.packaging import DirectorySaveTarget
from galexport.runtime.gallery_source import GalleryLoadError, LoadedGallery, load_gallery
from galexport.runtime.orchestrator import DownloadOrchestrator
from galexport.runtime.relay import (
    ImageRelay,
    is_allowed_content_type,
    is_allowed_host,
    is_private_host,
    upstream_headers,
    validate_gallery_id,
)
from galexport.runtime.server_map_resolver import ServerMapResolver


logger = logging.getLogger(__name__)

RANGE_PREFIX = "bytes="
PASSTHROUGH_HEADERS = ("accept-ranges", "content-range")


def _valid_range(value: str | None) -> bool:
    if not value or not value.startswith(RANGE_PREFIX):
        return False
    start, sep, end = value.removeprefix(RANGE_PREFIX).partition("-")
    return bool(sep) and start.isdigit() and (not end or end.isdigit())


def build_gallery_router(
    *,
    settings: Settings,
    client: httpx.AsyncClient,
    resolver: ServerMapResolver,
) -> APIRouter:
    router = APIRouter()
    orchestrators: dict[str, DownloadOrchestrator] = {}

    async def _load(gallery_id: str) -> LoadedGallery:
        if validate_gallery_id(gallery_id) is None:
            raise HTTPException(status_code=400, detail="gallery id must be numeric")
        try:
            return await load_gallery(client, settings, resolver, gallery_id)
        except GalleryLoadError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    @router.get("/api/galleries/{gallery_id}/sources", response_model=GallerySourcesResponse)
    async def gallery_sources(gallery_id: str) -> GallerySourcesResponse:
        gallery = await _load(gallery_id)
        return GallerySourcesResponse(
            gallery_id=gallery_id,
            title=gallery.info.title,
            images=[
                ImageSourcesResponse(
                    index=entry.index,
                    sources=entry.sources,
                    width=entry.width,
                    height=entry.height,
                )
                for entry in gallery.entries
            ],
        )

    @router.post("/api/galleries/{gallery_id}/export", response_model=ExportOutcome)
    async def export_gallery(gallery_id: str, payload: ExportRequest) -> ExportOutcome:
        current = orchestrators.get(gallery_id)
        if current is not None and current.busy:
            raise HTTPException(status_code=409, detail="Download already in progress")

        gallery = await _load(gallery_id)
        current = orchestrators.get(gallery_id)
        if current is not None and current.busy:
            raise HTTPException(status_code=409, detail="Download already in progress")

        orchestrator = DownloadOrchestrator(
            settings,
            ImageRelay(client, settings, gallery_id),
            gallery.entries,
            gallery.label,
            DirectorySaveTarget(settings.outputs_path / gallery_id),
        )
        orchestrators[gallery_id] = orchestrator
        outcome = await orchestrator.request(payload)
        if outcome.status == OutcomeStatus.BUSY:
            raise HTTPException(status_code=409, detail=outcome.message)
        return outcome

    @router.get("/api/gallery-image")
    async def gallery_image(request: Request, url: str | None = None, gid: str | None = None) -> Response:
        if not url:
            raise HTTPException(status_code=400, detail="Missing url parameter.")
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            raise HTTPException(status_code=400, detail="Invalid url parameter.")
        if parsed.scheme != "https":
            raise HTTPException(status_code=400, detail="Invalid url protocol.")
        if not is_allowed_host(parsed.hostname, settings.image_domain):
            raise HTTPException(status_code=403, detail="Host not allowed.")
        if is_private_host(parsed.hostname):
            raise HTTPException(status_code=403, detail="Private IP addresses not allowed.")

        headers = upstream_headers(settings, gid)
        range_header = request.headers.get("range")
        if _valid_range(range_header):
            headers["Range"] = range_header

        upstream_request = client.build_request("GET", url, headers=headers)
        try:
            upstream = await client.send(upstream_request, stream=True, follow_redirects=False)
        except httpx.HTTPError as exc:
            logger.warning(f"[Relay] Upstream fetch failed for {url[:80]}: {exc}")
            raise HTTPException(status_code=502, detail="Failed to fetch remote image.") from exc

        try:
            if upstream.is_redirect or 300 <= upstream.status_code < 400:
                raise HTTPException(status_code=403, detail="Redirects not allowed.")
            if not upstream.is_success:
                raise HTTPException(status_code=upstream.status_code, detail="Failed to fetch remote image.")

            content_type = upstream.headers.get("content-type", "")
            if not is_allowed_content_type(content_type):
                raise HTTPException(status_code=415, detail="Invalid content type.")

            declared = upstream.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > settings.max_image_bytes:
                raise HTTPException(status_code=413, detail="Content too large.")

            body = bytearray()
            async for chunk in upstream.aiter_bytes():
                body.extend(chunk)
                if len(body) > settings.max_image_bytes:
                    raise HTTPException(status_code=413, detail="Content too large.")
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=502, detail="Failed to fetch remote image.") from exc
        finally:
            await upstream.aclose()

        response_headers = {"content-type": content_type}
        for name in PASSTHROUGH_HEADERS:
            value = upstream.headers.get(name)
            if value:
                response_headers[name] = value
        response_headers["cache-control"] = "public, max-age=86400, immutable"
        response_headers["X-Content-Type-Options"] = "nosniff"
        return Response(content=bytes(body), status_code=upstream.status_code, headers=response_headers)

    return router
