from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from galexport.core.config import Settings
from galexport.core.image_urls import ImageEntry, RELAY_PATH, source_extension
from galexport.core.raster import DecodedImage, decode_image


logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/avif",
)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/avif": "avif",
}

USER_AGENT = "Mozilla/5.0 (compatible)"
GALLERY_ID_PATTERN = re.compile(r"^[0-9]{1,20}$")


class RelayError(RuntimeError):
    pass


@dataclass
class FetchedImage:
    source: str
    data: bytes
    content_type: str

    @property
    def extension(self) -> str:
        for mime, ext in CONTENT_TYPE_EXTENSIONS.items():
            if mime in self.content_type:
                return ext
        return source_extension(self.source) or "jpg"


def is_allowed_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    return any(allowed in content_type for allowed in ALLOWED_CONTENT_TYPES)


def is_allowed_host(hostname: str, image_domain: str) -> bool:
    hostname = hostname.lower()
    return hostname == image_domain or hostname.endswith(f".{image_domain}")


def is_private_host(hostname: str) -> bool:
    hostname = hostname.strip("[]").lower()
    if hostname in {"localhost", "::"}:
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified


def validate_gallery_id(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip()
    if not GALLERY_ID_PATTERN.match(cleaned):
        return None
    return cleaned


def upstream_headers(settings: Settings, gallery_id: str | None) -> dict[str, str]:
    return {
        "Referer": settings.gallery_referer(validate_gallery_id(gallery_id)),
        "Origin": settings.referer_base_url.rstrip("/"),
        "User-Agent": USER_AGENT,
    }


class ImageRelay:
    """Fetches candidate image URLs, directly or through the byte relay.

    Any non-success answer from one candidate only means the next candidate
    is tried; ``fetch_first`` returns ``None`` once all of them failed.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings, gallery_id: str | None = None):
        self.client = client
        self.settings = settings
        self.gallery_id = gallery_id

    def _is_relayed(self, url: str) -> bool:
        return urlparse(url).path.endswith(RELAY_PATH)

    def _headers_for(self, url: str) -> dict[str, str]:
        if self._is_relayed(url):
            return {}
        return upstream_headers(self.settings, self.gallery_id)

    async def fetch(self, url: str) -> FetchedImage:
        limit = self.settings.max_image_bytes
        try:
            async with self.client.stream("GET", url, headers=self._headers_for(url)) as response:
                if not response.is_success:
                    raise RelayError(f"HTTP {response.status_code}")

                content_type = response.headers.get("content-type", "")
                if not is_allowed_content_type(content_type):
                    raise RelayError(f"unexpected content type {content_type or '<none>'}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise RelayError(f"content too large ({declared} bytes)")

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > limit:
                        raise RelayError(f"content exceeded {limit} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise RelayError(f"transport error: {exc}") from exc

        return FetchedImage(source=url, data=b"".join(chunks), content_type=content_type)

    async def fetch_first(self, sources: list[str]) -> FetchedImage | None:
        for source in sources:
            try:
                return await self.fetch(source)
            except RelayError as exc:
                logger.warning(f"[Relay] {source[:80]} failed: {exc}")
        return None

    async def load_decoded(self, entry: ImageEntry) -> DecodedImage | None:
        """Fetch and decode the first candidate that yields a usable raster."""
        for source in entry.sources:
            try:
                fetched = await self.fetch(source)
            except RelayError as exc:
                logger.warning(f"[Relay] {source[:80]} failed: {exc}")
                continue
            decoded = await asyncio.to_thread(decode_image, fetched.data)
            if decoded is not None:
                return decoded
            logger.warning(f"[Relay] {source[:80]} returned undecodable {fetched.content_type}")
        return None
