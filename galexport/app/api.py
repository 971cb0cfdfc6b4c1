from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI

from galexport.app.routes import build_gallery_router
from galexport.core.config import get_settings
from galexport.runtime.server_map_resolver import get_server_map_resolver


settings = get_settings()
client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
resolver = get_server_map_resolver()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    try:
        yield
    finally:
        await client.aclose()


app = FastAPI(title="galexport", version="0.1.0", lifespan=lifespan)
app.include_router(build_gallery_router(settings=settings, client=client, resolver=resolver))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "time": datetime.now(UTC).isoformat()}
