from __future__ import annotations

import asyncio
import logging
from functools import lru_cache

import httpx

from galexport.core.config import get_settings
from galexport.core.server_map import ServerMap, parse_server_map


logger = logging.getLogger(__name__)


class ServerMapResolver:
    """Session-scoped cache around the routing script.

    Concurrent first callers share one in-flight fetch. A failed resolution
    is not cached, so the next caller fetches again.
    """

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout_seconds: float = 30.0):
        self.url = url
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._cached: ServerMap | None = None
        self._pending: asyncio.Task[ServerMap | None] | None = None

    @property
    def cached(self) -> ServerMap | None:
        return self._cached

    def reset(self) -> None:
        self._cached = None
        self._pending = None

    async def _download(self, client: httpx.AsyncClient) -> str | None:
        response = await client.get(self.url, headers={"Cache-Control": "no-cache"})
        if not response.is_success:
            logger.warning(f"[ServerMap] {self.url} answered HTTP {response.status_code}")
            return None
        return response.text

    async def _fetch_and_parse(self) -> ServerMap | None:
        try:
            if self.client is not None:
                payload = await self._download(self.client)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    payload = await self._download(client)
        except httpx.HTTPError as exc:
            logger.warning(f"[ServerMap] Fetch failed: {exc}")
            return None

        if not payload:
            return None
        server_map = parse_server_map(payload)
        if server_map is None:
            logger.warning("[ServerMap] Routing script has no base path")
        return server_map

    async def resolve(self) -> ServerMap | None:
        if self._cached is not None:
            return self._cached

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._fetch_and_parse())
        pending = self._pending

        try:
            resolved = await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

        if resolved is None:
            return None

        self._cached = resolved
        logger.info(f"[ServerMap] Resolved {len(resolved.map)} buckets, base path {resolved.base_path!r}")
        return resolved


@lru_cache(maxsize=1)
def get_server_map_resolver() -> ServerMapResolver:
    settings = get_settings()
    return ServerMapResolver(settings.server_map_url, timeout_seconds=settings.request_timeout_seconds)
