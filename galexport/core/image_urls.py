from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import parse_qs, quote, urlparse

from galexport.core.models import GalleryImageDescriptor
from galexport.core.server_map import ServerMap


HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
PREFERRED_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "avif")
RELAY_PATH = "/api/gallery-image"


@dataclass
class ImageEntry:
    index: int
    sources: list[str] = field(default_factory=list)
    width: int | None = None
    height: int | None = None

    @property
    def page_number(self) -> int:
        return self.index + 1

    @property
    def has_declared_size(self) -> bool:
        return bool(self.width and self.height)


def hash_bucket(image_hash: str | None) -> int | None:
    if not image_hash or len(image_hash) < 3:
        return None
    code = image_hash[-1] + image_hash[-3:-1]
    if not set(code) <= HEX_DIGITS:
        return None
    return int(code, 16)


def image_variants(descriptor: GalleryImageDescriptor) -> list[str]:
    variants: list[str] = []
    if descriptor.has_webp:
        variants.append("webp")
    if descriptor.has_avif:
        variants.append("avif")
    original = descriptor.original_extension
    if original and original not in variants:
        variants.append(original)
    if not variants:
        variants.append("jpg")
    return variants


def resolve_image_url(
    descriptor: GalleryImageDescriptor,
    server_map: ServerMap,
    ext: str,
    image_domain: str,
) -> str | None:
    bucket = hash_bucket(descriptor.hash)
    if bucket is None:
        return None
    ext = ext.lower()
    host_prefix = ext[:1] or "i"
    server_id = server_map.server_id(bucket)
    return (
        f"https://{host_prefix}{server_id}.{image_domain}/"
        f"{server_map.base_path}/{bucket}/{descriptor.hash}.{ext}"
    )


def resolve_variants(
    descriptor: GalleryImageDescriptor,
    server_map: ServerMap,
    image_domain: str,
) -> list[str]:
    urls: list[str] = []
    for variant in image_variants(descriptor):
        url = resolve_image_url(descriptor, server_map, variant, image_domain)
        if url and url not in urls:
            urls.append(url)
    return urls


def wrap_relay_url(relay_base_url: str, remote_url: str, gallery_id: str | None = None) -> str:
    wrapped = f"{relay_base_url.rstrip('/')}{RELAY_PATH}?url={quote(remote_url, safe='')}"
    if gallery_id:
        wrapped += f"&gid={quote(gallery_id, safe='')}"
    return wrapped


def build_image_entries(
    descriptors: list[GalleryImageDescriptor],
    server_map: ServerMap,
    image_domain: str,
    *,
    relay_base_url: str | None = None,
    gallery_id: str | None = None,
) -> list[ImageEntry]:
    entries: list[ImageEntry] = []
    for descriptor in descriptors:
        sources = resolve_variants(descriptor, server_map, image_domain)
        if relay_base_url:
            sources = [wrap_relay_url(relay_base_url, url, gallery_id) for url in sources]
        if not sources:
            continue
        # pages are numbered among the images that can be retrieved at all
        entries.append(
            ImageEntry(
                index=len(entries),
                sources=sources,
                width=descriptor.width,
                height=descriptor.height,
            )
        )
    return entries


def source_extension(source: str) -> str:
    if not source:
        return ""
    parsed = urlparse(source)
    remote = parse_qs(parsed.query).get("url", [""])[0]
    candidate = urlparse(remote).path if remote else parsed.path
    tail = candidate.rsplit("/", 1)[-1]
    if "." not in tail:
        return ""
    return tail.rsplit(".", 1)[-1].lower()


def pick_preferred_source(sources: list[str]) -> str:
    if not sources:
        return ""
    for ext in PREFERRED_EXTENSIONS:
        for source in sources:
            if source_extension(source) == ext:
                return source
    return sources[-1]
