"""
Command-line interface for document scanning.

Allows users to:
- Scan image files into a multi-page PDF (crop, filter, OCR, AI enhancement)
- Combine the front and back of an ID card into one PDF
- Capture a page from a live camera
- Browse and prune the scan history
- Run the AI text-enhancement server
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence

from dotenv import load_dotenv

from .bitmap import CropRegion
from .capture import CaptureSession, OpenCVVideoSource
from .config import Settings, get_settings
from .enhancer import TextEnhancer
from .errors import CaptureError, DocScanError
from .exporter import SystemClipboard, share_text
from .logging_config import setup_logging
from .ocr import OCREngine, create_backend
from .pipeline import PipelineOrchestrator
from .progress import ProgressChannel, ProgressSubscription
from .session import AI_ENHANCEMENT_SETTING, CardSession, ExportOutcome, PageSession
from .store import ScanStore
from .transform import FilterKind


def print_header() -> None:
    """Print CLI header."""
    print("\n" + "=" * 60)
    print("📄 Document Scanner")
    print("=" * 60 + "\n")


def print_separator() -> None:
    """Print section separator."""
    print("\n" + "-" * 60 + "\n")


def parse_region(value: str) -> CropRegion:
    """Parse "x,y,width,height" into a CropRegion."""
    try:
        x, y, width, height = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected x,y,width,height, got '{value}'")
    return CropRegion(x, y, width, height)


def build_orchestrator(settings: Settings, enhance: bool) -> PipelineOrchestrator:
    """OCR engine plus (optionally) the enhancement client, from settings."""
    backend = create_backend(
        settings.ocr_engine,
        tesseract_cmd=settings.tesseract_cmd,
        mistral_api_key=settings.mistral_api_key,
    )
    engine = OCREngine(backend, language=settings.ocr_language)
    enhancer = None
    if enhance:
        enhancer = TextEnhancer(
            settings.enhance_url,
            enabled=settings.enhance_enabled,
            timeout=settings.enhance_timeout,
            min_length=settings.enhance_min_length,
        )
    return PipelineOrchestrator(engine, enhancer)


async def _show_progress(subscription: ProgressSubscription) -> None:
    async for event in subscription:
        print(f"\r⏳ {event.phase}: {event.percent:3d}%", end="", flush=True)
    print()


async def recognize_pages(session: PageSession, enhance: bool) -> str:
    """OCR every page with a live progress line and join the texts."""
    texts = []
    for index in range(len(session.state.pages)):
        channel = ProgressChannel()
        printer = asyncio.create_task(_show_progress(channel.subscribe()))
        try:
            result = await session.recognize(index=index, enhance=enhance, progress=channel)
        finally:
            channel.close()
            await printer

        print(f"   Page {index + 1}: {result.status_message}")
        if not result.no_text:
            texts.append(result.text)

    session.text = "\n\n".join(texts)
    return session.text


def report_export(outcome: ExportOutcome) -> None:
    if outcome.share.path is not None:
        print(f"✅ Saved {outcome.share.path} ({outcome.page_count} page(s))")
    else:
        print(f"✅ Shared {outcome.filename} ({outcome.page_count} page(s))")


# ============================================================================
# Subcommands
# ============================================================================

async def cmd_scan(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    enhance = args.enhance
    if enhance is None:
        enhance = bool(store.get_setting(AI_ENHANCEMENT_SETTING, True))

    orchestrator = build_orchestrator(settings, enhance) if args.ocr else None
    session = PageSession(orchestrator=orchestrator, store=store, export_dir=args.output_dir or settings.export_dir)

    try:
        for image in args.images:
            session.load_image(image)
            if args.crop is not None:
                session.confirm_crop(args.crop)
            else:
                session.cancel_crop()
            session.select_filter(args.filter)
            session.add_page()
            print(f"✅ Added {image}")

        if orchestrator is not None:
            print_separator()
            print("📖 Recognizing text...")
            await recognize_pages(session, enhance)

            if session.text:
                print(f"✅ Extracted {len(session.text)} characters")
                print(f"   Preview: {session.text[:200]}...")

        print_separator()
        outcome = session.export(include_text=bool(session.text))
        report_export(outcome)

        if args.copy_text and session.text:
            shared = share_text(session.text, clipboard=SystemClipboard())
            print(f"📋 Text: {shared.value}")
        return 0
    finally:
        session.close()
        if orchestrator is not None:
            await orchestrator.aclose()


async def cmd_idcard(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    session = CardSession(store=store, export_dir=args.output_dir or settings.export_dir)
    try:
        session.load_side(args.front)
        session.load_side(args.back)
        if args.grayscale:
            session.set_color_mode("grayscale")
        report_export(session.export())
        return 0
    finally:
        session.close()


async def cmd_camera(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    camera = CaptureSession(OpenCVVideoSource(camera_index=settings.camera_index if args.camera is None else args.camera))
    session = PageSession(capture=camera, store=store, export_dir=args.output_dir or settings.export_dir)
    try:
        print("📷 Capturing from camera...")
        await session.capture_image()
        session.cancel_crop()
        session.add_page()
        report_export(session.export(include_text=False))
        return 0
    finally:
        session.close()


def cmd_history(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    if args.prune is not None:
        count = store.delete_older_than(args.prune)
        print(f"✅ Removed {count} record(s) older than {args.prune}h")
        return 0

    if args.clear:
        store.clear()
        print("✅ History cleared")
        return 0

    records = store.list(type=args.type, limit=args.limit or settings.history_limit)
    if not records:
        print("No scans yet")
        return 0

    for record in records:
        preview = record.ocr_text[:60].replace("\n", " ")
        print(f"{record.date:%Y-%m-%d %H:%M}  {record.type:<8} {record.page_count:>3}p  {record.filename}")
        if preview:
            print(f"    {preview}")
    return 0


def cmd_settings(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    if args.ai_enhancement is not None:
        store.set_setting(AI_ENHANCEMENT_SETTING, args.ai_enhancement == "on")
    for key, value in sorted(store.all_settings().items()):
        print(f"{key} = {value}")
    print(f"Storage used: ~{store.storage_size()} bytes")
    return 0


def cmd_serve(args: argparse.Namespace, settings: Settings, store: ScanStore) -> int:
    from .server import run

    if args.port:
        settings = settings.model_copy(update={"server_port": args.port})
    print(f"🚀 Enhancement server on http://{settings.server_host}:{settings.server_port}/enhance")
    run(settings)
    return 0


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Document Scanner - scan documents and ID cards to PDF with OCR"
    )
    parser.add_argument("--log-level", help="Log level (default: from settings)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Scan image files into a PDF")
    scan.add_argument("images", nargs="+", help="Image files, one page each")
    scan.add_argument("--crop", type=parse_region, help="Crop region x,y,width,height in pixels")
    scan.add_argument(
        "--filter",
        choices=[kind.value for kind in FilterKind],
        default=FilterKind.ORIGINAL.value,
        help="Filter applied to every page (default: original)"
    )
    scan.add_argument("--ocr", action="store_true", help="Recognize text and append it to the PDF")
    scan.add_argument(
        "--enhance",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Clean up recognized text with AI (default: stored setting)"
    )
    scan.add_argument("--copy-text", action="store_true", help="Copy recognized text to the clipboard")
    scan.add_argument("-o", "--output-dir", help="Directory for the PDF")

    idcard = subparsers.add_parser("idcard", help="Combine ID card front and back into a PDF")
    idcard.add_argument("front", help="Front side image")
    idcard.add_argument("back", help="Back side image")
    idcard.add_argument("--grayscale", action="store_true", help="Export in grayscale")
    idcard.add_argument("-o", "--output-dir", help="Directory for the PDF")

    camera = subparsers.add_parser("camera", help="Capture one page from a camera")
    camera.add_argument("--camera", type=int, help="Camera index (default: from settings)")
    camera.add_argument("-o", "--output-dir", help="Directory for the PDF")

    history = subparsers.add_parser("history", help="Show recent scans")
    history.add_argument("--type", choices=["document", "idcard"], help="Only this kind of scan")
    history.add_argument("--limit", type=int, help="Number of scans to show")
    history.add_argument("--prune", type=float, metavar="HOURS", help="Delete scans older than HOURS")
    history.add_argument("--clear", action="store_true", help="Delete all scans")

    settings_parser = subparsers.add_parser("settings", help="Show or change stored settings")
    settings_parser.add_argument("--ai-enhancement", choices=["on", "off"], help="Default AI enhancement")

    serve = subparsers.add_parser("serve", help="Run the AI text-enhancement server")
    serve.add_argument("--port", type=int, help="Port (default: from settings)")

    return parser


COMMANDS = {
    "scan": cmd_scan,
    "idcard": cmd_idcard,
    "camera": cmd_camera,
    "history": cmd_history,
    "settings": cmd_settings,
    "serve": cmd_serve,
}


def main(argv: Sequence[str] | None = None) -> None:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    # Load environment variables from .env file if it exists
    load_dotenv()
    settings = get_settings()
    setup_logging(args.log_level or settings.log_level, settings.log_file)

    print_header()

    store = ScanStore(settings.database_url)
    store.delete_older_than(settings.history_retention_hours)

    handler = COMMANDS[args.command]
    try:
        result = handler(args, settings, store)
        if asyncio.iscoroutine(result):
            result = asyncio.run(result)
    except CaptureError as e:
        print(f"❌ {e.user_message}")
        sys.exit(1)
    except DocScanError as e:
        print(f"❌ {e}")
        sys.exit(1)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n👋 Goodbye!")
        sys.exit(130)
    finally:
        store.close()

    sys.exit(result)


if __name__ == "__main__":
    main()
