from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


REPO_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    api_host: str = Field(default="127.0.0.1", alias="GALEX_API_HOST")
    api_port: int = Field(default=8795, alias="GALEX_API_PORT")
    log_level: str = Field(default="INFO", alias="GALEX_LOG_LEVEL")

    outputs_dir: str = Field(default="outputs", alias="GALEX_OUTPUTS_DIR")

    gallery_base_url: str = Field(
        default="https://ltn.gold-usergeneratedcontent.net/galleries",
        alias="GALEX_GALLERY_BASE_URL",
    )
    server_map_url: str = Field(
        default="https://ltn.gold-usergeneratedcontent.net/gg.js",
        alias="GALEX_SERVER_MAP_URL",
    )
    image_domain: str = Field(default="gold-usergeneratedcontent.net", alias="GALEX_IMAGE_DOMAIN")
    referer_base_url: str = Field(default="https://hitomi.la", alias="GALEX_REFERER_BASE_URL")
    relay_base_url: str | None = Field(default=None, alias="GALEX_RELAY_BASE_URL")

    request_timeout_seconds: float = Field(default=30.0, gt=0.0, alias="GALEX_REQUEST_TIMEOUT_SECONDS")
    max_image_bytes: int = Field(default=50 * 1024 * 1024, ge=1, alias="GALEX_MAX_IMAGE_BYTES")
    max_concurrent_fetches: int = Field(default=4, ge=1, alias="GALEX_MAX_CONCURRENT_FETCHES")
    zip_compress_level: int = Field(default=6, ge=0, le=9, alias="GALEX_ZIP_COMPRESS_LEVEL")

    def resolve_path(self, path_value: str) -> Path:
        candidate = Path(path_value).expanduser()
        if candidate.is_absolute():
            return candidate
        return REPO_ROOT / candidate

    @property
    def outputs_path(self) -> Path:
        return self.resolve_path(self.outputs_dir)

    def gallery_referer(self, gallery_id: str | None) -> str:
        base = self.referer_base_url.rstrip("/")
        if gallery_id:
            return f"{base}/reader/{gallery_id}.html"
        return f"{base}/"

    def ensure_runtime_dirs(self) -> None:
        self.outputs_path.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_runtime_dirs()
    return settings
