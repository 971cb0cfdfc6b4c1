from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from galexport.core.config import Settings
from galexport.core.formats import FormatConfig, probe_format
from galexport.core.image_urls import ImageEntry, pick_preferred_source
from galexport.core.models import (
    DownloadKind,
    ExportOutcome,
    ExportRequest,
    Notification,
    NotificationLevel,
    OutcomeStatus,
)
from galexport.core.packaging import OutputPackager, SaveTarget, page_base_name
from galexport.core.raster import RasterOutput
from galexport.core.stitcher import CompositeStitcher
from galexport.core.tiling import split_image
from galexport.runtime.relay import ImageRelay


logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], None]
DocumentExporter = Callable[[list[ImageEntry], str], Awaitable[ExportOutcome]]

BUSY_MESSAGE = "Download already in progress"
EMPTY_MESSAGE = "No images to download"
ALL_FAILED_MESSAGE = "No images could be downloaded"
FAILED_MESSAGE = "Download failed. Please try again."
NO_DOCUMENT_EXPORT_MESSAGE = "Document export is not available"


class DownloadOrchestrator:
    """Runs one export at a time for a loaded gallery.

    ``request`` never raises: every run ends in an ``ExportOutcome`` and the
    matching notification. A request that arrives while another export is
    running is rejected with ``OutcomeStatus.BUSY`` and does not touch the
    running one.
    """

    def __init__(
        self,
        settings: Settings,
        relay: ImageRelay,
        entries: list[ImageEntry],
        label: str,
        target: SaveTarget,
        notify: Notifier | None = None,
        document_exporter: DocumentExporter | None = None,
    ):
        self.settings = settings
        self.relay = relay
        self.entries = entries
        self.label = label
        self.target = target
        self.notify = notify
        self.document_exporter = document_exporter
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def _emit(self, level: NotificationLevel, message: str) -> None:
        if self.notify is None:
            return
        try:
            self.notify(Notification(level=level, message=message))
        except Exception:  # noqa: BLE001
            logger.exception("[Export] Notification handler failed")

    async def request(self, request: ExportRequest) -> ExportOutcome:
        if self._busy:
            self._emit(NotificationLevel.INFO, BUSY_MESSAGE)
            return ExportOutcome(status=OutcomeStatus.BUSY, message=BUSY_MESSAGE)
        if not self.entries:
            self._emit(NotificationLevel.ERROR, EMPTY_MESSAGE)
            return ExportOutcome(status=OutcomeStatus.ERROR, message=EMPTY_MESSAGE)

        self._busy = True
        self._emit(NotificationLevel.LOADING, f"Preparing to download {len(self.entries)} images...")
        try:
            outcome = await self._dispatch(request)
        except Exception:  # noqa: BLE001
            logger.exception(f"[Export] {self.label} {request.kind.value} export failed")
            outcome = ExportOutcome(status=OutcomeStatus.ERROR, message=FAILED_MESSAGE)
        finally:
            self._busy = False

        if outcome.ok:
            self._emit(NotificationLevel.SUCCESS, outcome.message)
        else:
            self._emit(NotificationLevel.ERROR, outcome.message)
        return outcome

    async def _dispatch(self, request: ExportRequest) -> ExportOutcome:
        if request.kind == DownloadKind.PDF:
            if self.document_exporter is None:
                return ExportOutcome(status=OutcomeStatus.ERROR, message=NO_DOCUMENT_EXPORT_MESSAGE)
            return await self.document_exporter(self.entries, self.label)
        if request.kind == DownloadKind.ORIGINAL:
            return await self._export_originals(request)
        return await self._export_images(request)

    def _packager(self, request: ExportRequest, zip_name: str) -> OutputPackager:
        return OutputPackager(
            request.packaging,
            self.target,
            zip_name=zip_name,
            compress_level=self.settings.zip_compress_level,
        )

    @staticmethod
    async def _gather_all(coroutines: Iterable[Awaitable[bool]]) -> list[bool]:
        # every task settles before the session is released
        results = await asyncio.gather(*coroutines, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    @staticmethod
    def _finish(count: int, packager: OutputPackager) -> ExportOutcome:
        if count == 0:
            return ExportOutcome(status=OutcomeStatus.ERROR, message=ALL_FAILED_MESSAGE)
        files = packager.finalize()
        return ExportOutcome(
            status=OutcomeStatus.SUCCESS,
            count=count,
            message=f"Successfully downloaded {count} images!",
            files=files,
        )

    async def _export_images(self, request: ExportRequest) -> ExportOutcome:
        config = probe_format(request.format)
        if request.combine:
            return await self._export_combined(request, config)

        packager = self._packager(request, f"{self.label}-{config.extension}.zip")
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_fetches)
        total = len(self.entries)

        async def export_one(entry: ImageEntry) -> bool:
            async with semaphore:
                decoded = await self.relay.load_decoded(entry)
                if decoded is None:
                    logger.warning(f"[Export] Page {entry.page_number} unavailable, skipping")
                    return False
                with decoded:
                    base_name = page_base_name(self.label, entry.page_number, total)
                    outputs: list[RasterOutput] = await asyncio.to_thread(
                        lambda: list(split_image(decoded, config, base_name, request.split))
                    )
            for output in outputs:
                packager.add(output)
            return bool(outputs)

        results = await self._gather_all(export_one(entry) for entry in self.entries)
        return self._finish(sum(1 for exported in results if exported), packager)

    async def _export_combined(self, request: ExportRequest, config: FormatConfig) -> ExportOutcome:
        packager = self._packager(request, f"{self.label}-combined-{config.extension}.zip")
        stitcher = CompositeStitcher(config, self.label, self.relay.load_decoded)
        chunks = 0
        async for output in stitcher.iter_combined(self.entries):
            packager.add(output)
            chunks += 1
        if chunks == 0:
            return ExportOutcome(status=OutcomeStatus.ERROR, message=ALL_FAILED_MESSAGE)
        return self._finish(stitcher.pages_drawn, packager)

    async def _export_originals(self, request: ExportRequest) -> ExportOutcome:
        packager = self._packager(request, f"{self.label}-original.zip")
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_fetches)
        total = len(self.entries)

        async def export_one(entry: ImageEntry) -> bool:
            preferred = pick_preferred_source(entry.sources)
            ordered = [preferred] + [source for source in entry.sources if source != preferred]
            async with semaphore:
                fetched = await self.relay.fetch_first(ordered)
            if fetched is None:
                logger.warning(f"[Export] Page {entry.page_number} unavailable, skipping")
                return False
            name = f"{page_base_name(self.label, entry.page_number, total)}.{fetched.extension}"
            packager.add(RasterOutput(name=name, data=fetched.data, mime=fetched.content_type))
            return True

        results = await self._gather_all(export_one(entry) for entry in self.entries)
        return self._finish(sum(1 for exported in results if exported), packager)
