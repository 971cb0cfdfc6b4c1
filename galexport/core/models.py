from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DownloadKind(str, Enum):
    ORIGINAL = "original"
    PDF = "pdf"
    IMAGES = "images"


class ExportFormat(str, Enum):
    PNG = "png"
    JPG = "jpg"
    WEBP = "webp"
    AVIF = "avif"


class Packaging(str, Enum):
    SINGLE = "single"
    ZIP = "zip"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    BUSY = "busy"


class NotificationLevel(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class GalleryImageDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    hash: str | None = None
    name: str | None = None
    width: int | None = None
    height: int | None = None
    has_webp: bool = Field(default=False, alias="haswebp")
    has_avif: bool = Field(default=False, alias="hasavif")

    @field_validator("has_webp", "has_avif", mode="before")
    @classmethod
    def coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("width", "height", mode="before")
    @classmethod
    def positive_or_none(cls, value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value) if value > 0 else None

    @property
    def original_extension(self) -> str | None:
        if not self.name or "." not in self.name:
            return None
        ext = self.name.rsplit(".", 1)[-1].strip().lower()
        return ext or None


class GalleryInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    title: str | None = None
    files: list[GalleryImageDescriptor] = Field(default_factory=list)


class ExportRequest(BaseModel):
    kind: DownloadKind = DownloadKind.IMAGES
    format: ExportFormat = ExportFormat.PNG
    packaging: Packaging = Packaging.ZIP
    split: bool = False
    combine: bool = False

    @model_validator(mode="after")
    def validate_modes(self) -> "ExportRequest":
        if self.kind != DownloadKind.IMAGES and (self.split or self.combine):
            raise ValueError("split/combine only apply to image exports")
        return self


class ExportOutcome(BaseModel):
    status: OutcomeStatus
    count: int = 0
    message: str = ""
    files: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class Notification(BaseModel):
    level: NotificationLevel
    message: str


class ImageSourcesResponse(BaseModel):
    index: int
    sources: list[str]
    width: int | None = None
    height: int | None = None


class GallerySourcesResponse(BaseModel):
    gallery_id: str
    title: str | None = None
    images: list[ImageSourcesResponse]
