from __future__ import annotations

import logging
import re
import zipfile
from io import BytesIO
from pathlib import Path
from typing import Protocol

from galexport.core.models import Packaging
from galexport.core.raster import RasterOutput


logger = logging.getLogger(__name__)

ZIP_MIME = "application/zip"


class SaveTarget(Protocol):
    def save(self, name: str, data: bytes, mime: str) -> None: ...


class DirectorySaveTarget:
    def __init__(self, directory: Path):
        self.directory = directory
        self.saved: list[Path] = []

    def save(self, name: str, data: bytes, mime: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        path.write_bytes(data)
        self.saved.append(path)


class MemorySaveTarget:
    def __init__(self) -> None:
        self.files: dict[str, tuple[bytes, str]] = {}

    def save(self, name: str, data: bytes, mime: str) -> None:
        self.files[name] = (data, mime)


def sanitize_file_name(value: str) -> str:
    cleaned = re.sub(r'[\\/:*?"<>|]+', "-", value)
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip()


def pad_index(value: int, total: int) -> str:
    width = len(str(max(1, total)))
    return str(value).zfill(width)


def page_base_name(label: str, page_number: int, total: int) -> str:
    return f"{label}-{pad_index(page_number, total)}"


def build_zip(entries: dict[str, bytes], compress_level: int = 6) -> bytes:
    buffer = BytesIO()
    with zipfile.ZipFile(
        buffer,
        mode="w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=compress_level,
    ) as archive:
        for name in sorted(entries):
            archive.writestr(name, entries[name])
    return buffer.getvalue()


class OutputPackager:
    def __init__(
        self,
        packaging: Packaging,
        target: SaveTarget,
        zip_name: str,
        compress_level: int = 6,
    ):
        self.packaging = Packaging(packaging)
        self.target = target
        self.zip_name = zip_name
        self.compress_level = compress_level
        self._entries: dict[str, bytes] = {}
        self.saved_names: list[str] = []

    @property
    def pending(self) -> int:
        return len(self._entries)

    def add(self, output: RasterOutput) -> None:
        if self.packaging == Packaging.ZIP:
            self._entries[output.name] = output.data
            return
        self.target.save(output.name, output.data, output.mime)
        self.saved_names.append(output.name)

    def finalize(self) -> list[str]:
        if self.packaging == Packaging.ZIP and self._entries:
            archive = build_zip(self._entries, self.compress_level)
            logger.info(f"[Packager] Writing {self.zip_name} ({len(self._entries)} entries, {len(archive) // 1024}KB)")
            self.target.save(self.zip_name, archive, ZIP_MIME)
            self.saved_names.append(self.zip_name)
            self._entries.clear()
        return list(self.saved_names)
