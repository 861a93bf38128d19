"""
PDF assembly and sharing.

Pages are embedded as JPEG, scaled to the page width with their aspect ratio
kept, in list order. Optional recognized text follows on one or more trailing
text pages. Finished documents go to a share surface when one is available
and are downloaded (written to disk) otherwise.
"""

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Protocol

import cv2
import numpy as np
import pyperclip
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .bitmap import DEFAULT_JPEG_QUALITY, Bitmap
from .errors import EmptyExport
from .transform import grayscale

logger = logging.getLogger(__name__)

CARD_GAP = 20
CAPTION_COLOR = (102, 102, 102, 255)  # #666666

TEXT_FONT = "Helvetica"
TEXT_FONT_SIZE = 12
TEXT_MARGIN = 10 * mm
TEXT_COLUMN_WIDTH = 180 * mm
TEXT_HEADING = "Scanned Text:"


@dataclass(frozen=True)
class PDFDocument:
    data: bytes
    page_count: int
    filename: str = "scan.pdf"


def export_filename(kind: str = "scan", on: date | None = None) -> str:
    """scan_<YYYY-MM-DD>.pdf or idcard_<YYYY-MM-DD>.pdf"""
    on = on or date.today()
    return f"{kind}_{on.isoformat()}.pdf"


# ============================================================================
# PDF
# ============================================================================

def build_pdf(pages: list[Bitmap],
              text: str | None = None,
              filename: str | None = None,
              title: str = "Scanned Document",
              jpeg_quality: float = DEFAULT_JPEG_QUALITY) -> PDFDocument:
    """
    Assemble bitmaps and optional text into a PDF.

    Args:
        pages: Page images, exported in list order
        text: Recognized text appended on trailing text page(s)
        filename: Name to attach to the document (default: scan_<date>.pdf)
        title: PDF title metadata
        jpeg_quality: JPEG quality used to embed the images

    Returns:
        PDFDocument with the PDF bytes and its page count

    Raises:
        EmptyExport: If there are no pages and no text
    """
    if not pages and not (text and text.strip()):
        raise EmptyExport()

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(title)
    page_width, page_height = A4
    page_count = 0

    for index, bitmap in enumerate(pages):
        image_height = bitmap.height * page_width / bitmap.width
        image = ImageReader(io.BytesIO(bitmap.encode_jpeg(jpeg_quality)))
        pdf.drawImage(image, 0, page_height - image_height, width=page_width, height=image_height)

        caption_y = page_height - image_height - 5 * mm
        if caption_y > 0:
            pdf.setFont(TEXT_FONT, 8)
            pdf.drawCentredString(page_width / 2, caption_y, f"Page {index + 1} of {len(pages)}")

        pdf.showPage()
        page_count += 1

    if text and text.strip():
        page_count += _draw_text_pages(pdf, text, page_height)

    pdf.save()
    return PDFDocument(
        data=buffer.getvalue(),
        page_count=page_count,
        filename=filename or export_filename("scan"),
    )


def _draw_text_pages(pdf: canvas.Canvas, text: str, page_height: float) -> int:
    """Word-wrap text onto as many pages as needed. Returns pages drawn."""
    leading = TEXT_FONT_SIZE * 1.2
    lines = simpleSplit(text, TEXT_FONT, TEXT_FONT_SIZE, TEXT_COLUMN_WIDTH)

    pdf.setFont(TEXT_FONT, TEXT_FONT_SIZE)
    pdf.drawString(TEXT_MARGIN, page_height - 20 * mm, TEXT_HEADING)
    y = page_height - 30 * mm
    pages = 1

    for line in lines:
        if y < TEXT_MARGIN:
            pdf.showPage()
            pdf.setFont(TEXT_FONT, TEXT_FONT_SIZE)
            y = page_height - 20 * mm
            pages += 1
        pdf.drawString(TEXT_MARGIN, y, line)
        y -= leading

    pdf.showPage()
    return pages


# ============================================================================
# ID card
# ============================================================================

def _draw_caption(pixels: np.ndarray, caption: str, center_x: int, baseline_y: int) -> None:
    font = cv2.FONT_HERSHEY_SIMPLEX
    scale = 0.4
    (text_width, _), _ = cv2.getTextSize(caption, font, scale, 1)
    origin = (int(center_x - text_width / 2), int(baseline_y))
    cv2.putText(pixels, caption, origin, font, scale, CAPTION_COLOR, 1, cv2.LINE_AA)


def combine_card_sides(front: Bitmap, back: Bitmap, color_mode: str = "color") -> Bitmap:
    """
    Stack the front above the back on one white canvas.

    The canvas is max(width) wide and 2 * max(height) + 20 tall; each side is
    stretched to max(width) x max(height) and captioned FRONT/BACK.

    Args:
        front: Front side bitmap
        back: Back side bitmap
        color_mode: "color" or "grayscale"; grayscale filters copies of both
            sides, the inputs are not changed

    Returns:
        Combined bitmap
    """
    if color_mode not in ("color", "grayscale"):
        raise ValueError(f"Unknown color mode: {color_mode}")

    if color_mode == "grayscale":
        front = grayscale(front)
        back = grayscale(back)

    card_width = max(front.width, back.width)
    card_height = max(front.height, back.height)

    pixels = np.full((card_height * 2 + CARD_GAP, card_width, 4), 255, dtype=np.uint8)

    def fit(side: Bitmap) -> np.ndarray:
        if (side.width, side.height) == (card_width, card_height):
            return side.pixels
        return cv2.resize(side.pixels, (card_width, card_height), interpolation=cv2.INTER_LINEAR)

    pixels[:card_height] = fit(front)
    pixels[card_height + CARD_GAP:] = fit(back)

    _draw_caption(pixels, "FRONT", card_width // 2, card_height - 10)
    _draw_caption(pixels, "BACK", card_width // 2, pixels.shape[0] - 10)

    return Bitmap(pixels)


# ============================================================================
# Sharing
# ============================================================================

class ShareOutcome(str, Enum):
    SHARED = "shared"
    DOWNLOADED = "downloaded"
    COPIED = "copied"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ShareCancelled(Exception):
    """Raised by a share surface when the user dismisses it."""


@dataclass(frozen=True)
class SharedFile:
    filename: str
    data: bytes
    mime_type: str = "application/pdf"


@dataclass(frozen=True)
class ShareMetadata:
    title: str = "Scanned Document"
    text: str = ""


@dataclass(frozen=True)
class ShareResult:
    outcome: ShareOutcome
    path: Path | None = None


class ShareSurface(ABC):
    """A system share sheet or equivalent."""

    def can_share(self, with_files: bool = False) -> bool:
        return True

    @abstractmethod
    def share(self, title: str, text: str | None = None, files: list[SharedFile] | None = None) -> None:
        """
        Hand content to the share surface.

        Raises:
            ShareCancelled: If the user dismissed the share
        """
        pass


class Clipboard(Protocol):
    def copy(self, text: str) -> None:
        ...


class SystemClipboard:
    """Clipboard backed by pyperclip."""

    def copy(self, text: str) -> None:
        pyperclip.copy(text)


def share_capabilities(surface: ShareSurface | None, clipboard: Clipboard | None) -> dict[str, bool]:
    """What the current environment can do with finished scans."""
    return {
        "share_api_supported": surface is not None,
        "can_share_files": surface is not None and surface.can_share(with_files=True),
        "clipboard_supported": clipboard is not None,
    }


def download(pdf: PDFDocument, directory: str | Path = ".") -> Path:
    """Write the PDF into a directory and return its path."""
    target_dir = Path(directory).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / pdf.filename
    path.write_bytes(pdf.data)
    logger.info("Saved %s", path)
    return path


def share_or_download(pdf: PDFDocument,
                      metadata: ShareMetadata | None = None,
                      surface: ShareSurface | None = None,
                      download_dir: str | Path = ".") -> ShareResult:
    """
    Share the PDF, falling back to a download.

    The download happens when no surface exists, when it cannot take files,
    when the user cancels, or when sharing fails.
    """
    metadata = metadata or ShareMetadata()

    if surface is not None and surface.can_share(with_files=True):
        try:
            surface.share(
                metadata.title,
                text=metadata.text or None,
                files=[SharedFile(pdf.filename, pdf.data)],
            )
            logger.info("PDF shared successfully")
            return ShareResult(ShareOutcome.SHARED)
        except ShareCancelled:
            logger.info("Share cancelled, downloading instead")
        except Exception as e:
            logger.warning("Error sharing PDF, downloading instead: %s", e)
    else:
        logger.warning("Share surface not available, downloading instead")

    return ShareResult(ShareOutcome.DOWNLOADED, download(pdf, download_dir))


def share_text(text: str,
               title: str = "Scanned Text",
               surface: ShareSurface | None = None,
               clipboard: Clipboard | None = None) -> ShareOutcome:
    """
    Share plain text; copy it to the clipboard when there is no share surface.
    """
    if not text.strip():
        raise EmptyExport("Nothing to share. Please scan a document or process OCR first.")

    if surface is not None:
        try:
            surface.share(title, text=text)
            return ShareOutcome.SHARED
        except ShareCancelled:
            return ShareOutcome.CANCELLED
        except Exception as e:
            logger.warning("Error sharing text: %s", e)
            return ShareOutcome.FAILED

    if clipboard is None:
        logger.warning("Neither share surface nor clipboard available")
        return ShareOutcome.FAILED

    try:
        clipboard.copy(text)
    except Exception as e:
        logger.warning("Error copying to clipboard: %s", e)
        return ShareOutcome.FAILED
    return ShareOutcome.COPIED
