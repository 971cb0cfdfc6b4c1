from __future__ import annotations

import argparse
import asyncio
import logging
import subprocess
import sys
from pathlib import Path

from galexport.core.models import DownloadKind, ExportFormat, ExportRequest, Notification, Packaging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="galexport: gallery image resolution and export")
    subparsers = parser.add_subparsers(dest="command", required=False)

    api_parser = subparsers.add_parser("api", help="Run the export API and image relay")
    api_parser.add_argument("--host", default=None)
    api_parser.add_argument("--port", type=int, default=None)

    sources_parser = subparsers.add_parser("sources", help="Print the resolved image URLs of a gallery")
    sources_parser.add_argument("gallery_id")

    export_parser = subparsers.add_parser("export", help="Export a gallery's images")
    export_parser.add_argument("gallery_id")
    export_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in DownloadKind],
        default=DownloadKind.IMAGES.value,
    )
    export_parser.add_argument(
        "--format",
        choices=[fmt.value for fmt in ExportFormat],
        default=ExportFormat.PNG.value,
    )
    export_parser.add_argument(
        "--packaging",
        choices=[mode.value for mode in Packaging],
        default=Packaging.ZIP.value,
    )
    export_parser.add_argument("--split", action="store_true", help="Split oversized images into tiles")
    export_parser.add_argument("--combine", action="store_true", help="Stitch all pages into tall composites")
    export_parser.add_argument("--output-dir", default=None, help="Directory for saved files")
    export_parser.add_argument("--label", default=None, help="File name prefix (default: gallery title)")

    test_parser = subparsers.add_parser("test", help="Run all tests with pytest")
    test_parser.add_argument(
        "pytest_args",
        nargs=argparse.REMAINDER,
        help="Optional extra pytest args; use `--` before args (e.g. galexport test -- -k tiling)",
    )

    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_tests(args: argparse.Namespace) -> int:
    cmd = [sys.executable, "-m", "pytest"]
    if args.pytest_args:
        cmd.extend(args.pytest_args)
    print("Running:", " ".join(cmd))
    return subprocess.call(cmd)


def _print_notification(notification: Notification) -> None:
    print(f"[{notification.level.value}] {notification.message}")


async def _print_sources(gallery_id: str) -> int:
    import httpx

    from galexport.core.config import get_settings
    from galexport.runtime.gallery_source import GalleryLoadError, load_gallery
    from galexport.runtime.server_map_resolver import get_server_map_resolver

    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        try:
            gallery = await load_gallery(client, settings, get_server_map_resolver(), gallery_id)
        except GalleryLoadError as exc:
            print(f"Failed to load gallery {gallery_id}: {exc}", file=sys.stderr)
            return 1

    for entry in gallery.entries:
        print(f"{entry.page_number}: {' '.join(entry.sources)}")
    return 0


async def _run_export(args: argparse.Namespace) -> int:
    import httpx

    from galexport.core.config import get_settings
    from galexport.core.packaging import DirectorySaveTarget, sanitize_file_name
    from galexport.runtime.gallery_source import GalleryLoadError, load_gallery
    from galexport.runtime.orchestrator import DownloadOrchestrator
    from galexport.runtime.relay import ImageRelay
    from galexport.runtime.server_map_resolver import get_server_map_resolver

    settings = get_settings()
    try:
        request = ExportRequest(
            kind=args.kind,
            format=args.format,
            packaging=args.packaging,
            split=args.split,
            combine=args.combine,
        )
    except ValueError as exc:
        print(f"Invalid export options: {exc}", file=sys.stderr)
        return 2

    output_dir = Path(args.output_dir) if args.output_dir else settings.outputs_path / args.gallery_id
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        try:
            gallery = await load_gallery(client, settings, get_server_map_resolver(), args.gallery_id)
        except GalleryLoadError as exc:
            print(f"Failed to load gallery {args.gallery_id}: {exc}", file=sys.stderr)
            return 1

        label = sanitize_file_name(args.label) if args.label else gallery.label
        orchestrator = DownloadOrchestrator(
            settings,
            ImageRelay(client, settings, args.gallery_id),
            gallery.entries,
            label or gallery.label,
            DirectorySaveTarget(output_dir),
            notify=_print_notification,
        )
        outcome = await orchestrator.request(request)

    for name in outcome.files:
        print(output_dir / name)
    return 0 if outcome.ok else 1


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "test":
        raise SystemExit(run_tests(args))

    if args.command is None:
        parser.print_help()
        return

    from galexport.core.config import get_settings

    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "api":
        import uvicorn

        from galexport.app.api import app

        host = args.host or settings.api_host
        port = args.port or settings.api_port
        uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
        return

    if args.command == "sources":
        raise SystemExit(asyncio.run(_print_sources(args.gallery_id)))

    if args.command == "export":
        raise SystemExit(asyncio.run(_run_export(args)))

    parser.print_help()


if __name__ == "__main__":
    main()
