"""
Optical character recognition.

OCREngine is a long-lived handle around one recognition worker. The worker is
expensive to start, so it is created lazily on the first recognize() call,
reused afterwards and torn down when the last owner releases the handle.
Recognition runs on a dedicated worker thread; the event loop only exchanges
messages with it (bitmap in, progress and result out).
"""

import asyncio
import base64
import io
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import pytesseract  # type: ignore[import]
from PIL import Image
from mistralai import Mistral

from .bitmap import Bitmap
from .errors import EngineBusy, RecognitionFailed

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[float], None]


# Typed wrappers for pytesseract functions to satisfy type checker
def _image_to_data(image: Image.Image, lang: str, config: str, output_type: int) -> dict[str, list[str | int]]:
    """Typed wrapper for pytesseract.image_to_data."""
    result = pytesseract.image_to_data(image, lang=lang, config=config, output_type=output_type)  # type: ignore[attr-defined]
    if isinstance(result, dict):
        return result  # type: ignore[return-value]
    return dict(result)  # type: ignore[arg-type]


def _tesseract_version() -> str:
    """Typed wrapper for pytesseract.get_tesseract_version."""
    return str(pytesseract.get_tesseract_version())  # type: ignore[attr-defined]


# Get the OUTPUT.DICT constant
_OUTPUT_DICT: int = getattr(getattr(pytesseract, 'Output'), 'DICT')


@dataclass(frozen=True)
class BoundingBox:
    x0: int
    y0: int
    x1: int
    y1: int


@dataclass(frozen=True)
class OCRLine:
    text: str
    confidence: float
    bbox: BoundingBox | None = None


@dataclass(frozen=True)
class OCRResult:
    """Recognized text with overall confidence (0-100) and per-line detail."""
    text: str
    confidence: float
    lines: list[OCRLine] = field(default_factory=lambda: [])
    elapsed_ms: int = 0

    @property
    def is_empty(self) -> bool:
        """True when no text was found (a soft outcome, not a failure)."""
        return not self.text.strip()


@dataclass(frozen=True)
class Recognition:
    """Raw backend output before timing is attached."""
    text: str
    confidence: float
    lines: list[OCRLine]


# ============================================================================
# Backends
# ============================================================================

class RecognitionBackend(ABC):
    """Abstract base class for OCR backends run inside the worker."""

    @abstractmethod
    def is_available(self) -> bool:
        """Cheap check whether this backend can run at all."""
        pass

    @abstractmethod
    def initialize(self, language: str) -> None:
        """Prepare the backend for a language. Called on the worker thread."""
        pass

    @abstractmethod
    def recognize(self, bitmap: Bitmap, language: str, report: ProgressReporter) -> Recognition:
        """
        Recognize text in a bitmap.

        Args:
            bitmap: Decoded image
            language: Language code the backend was initialized with
            report: Called with progress values in [0, 1]

        Returns:
            Recognition with text, confidence (0-100) and lines
        """
        pass

    def terminate(self) -> None:
        """Release backend resources. Called on the worker thread."""


class TesseractOCR(RecognitionBackend):
    """Tesseract OCR implementation."""

    def __init__(self,
                 config: str = "",
                 tesseract_cmd: str | None = None):
        """
        Initialize Tesseract OCR.

        Args:
            config: Custom Tesseract config string (e.g., "--psm 6")
            tesseract_cmd: Path to tesseract executable (None = use default)
        """
        self.config = config

        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def is_available(self) -> bool:
        try:
            _tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError):
            return False
        return True

    def initialize(self, language: str) -> None:
        version = _tesseract_version()
        logger.info("Tesseract %s ready for '%s'", version, language)

    def recognize(self, bitmap: Bitmap, language: str, report: ProgressReporter) -> Recognition:
        report(0.0)
        pil_image = Image.fromarray(bitmap.to_rgb())

        data: dict[str, list[str | int]] = _image_to_data(
            pil_image,
            language,
            self.config,
            _OUTPUT_DICT
        )
        report(0.9)

        lines = self._group_lines(data)
        # Average over detected, non-empty words only
        word_confidences: list[float] = [
            float(conf) for conf, text in zip(data['conf'], data['text'])
            if float(conf) >= 0 and str(text).strip()
        ]
        avg_confidence: float = float(np.mean(word_confidences)) if word_confidences else 0.0

        full_text: str = '\n'.join(line.text for line in lines)
        report(1.0)

        return Recognition(text=full_text, confidence=avg_confidence, lines=lines)

    @staticmethod
    def _group_lines(data: dict[str, list[str | int]]) -> list[OCRLine]:
        """Group Tesseract word boxes into lines keyed by (block, paragraph, line)."""
        grouped: dict[tuple[int, int, int], list[int]] = {}

        for i, text_item in enumerate(data['text']):
            if float(data['conf'][i]) < 0:  # -1 means no text detected
                continue
            if not str(text_item).strip():
                continue
            key = (int(data['block_num'][i]), int(data['par_num'][i]), int(data['line_num'][i]))
            grouped.setdefault(key, []).append(i)

        lines: list[OCRLine] = []
        for key in sorted(grouped):
            indices = grouped[key]
            words = [str(data['text'][i]).strip() for i in indices]
            confs = [float(data['conf'][i]) for i in indices]
            left = [int(data['left'][i]) for i in indices]
            top = [int(data['top'][i]) for i in indices]
            right = [int(data['left'][i]) + int(data['width'][i]) for i in indices]
            bottom = [int(data['top'][i]) + int(data['height'][i]) for i in indices]

            lines.append(OCRLine(
                text=' '.join(words),
                confidence=float(np.mean(confs)),
                bbox=BoundingBox(min(left), min(top), max(right), max(bottom)),
            ))

        return lines


class MistralOCR(RecognitionBackend):
    """
    Mistral OCR implementation using Pixtral vision models.

    Requires Mistral API key and uses their vision model for OCR.
    Better for handwriting and complex layouts. No per-line positions.
    """

    def __init__(self, api_key: str | None, model: str = "mistral-ocr-latest"):
        """
        Initialize Mistral OCR.

        Args:
            api_key: Mistral API key
            model: Mistral OCR model to use (default: mistral-ocr-latest)
        """
        self.api_key = api_key
        self.model = model
        self.client: Mistral | None = None

    def is_available(self) -> bool:
        return bool(self.api_key)

    def initialize(self, language: str) -> None:
        if not self.api_key:
            raise ValueError("MISTRAL_API_KEY not configured")
        if self.client is None:
            self.client = Mistral(api_key=self.api_key)

    def _encode_image_base64(self, bitmap: Bitmap) -> str:
        """
        Encode a bitmap to a base64 data URI for API transmission.

        Returns:
            Base64 encoded image string with data URI prefix
        """
        pil_image = Image.fromarray(bitmap.to_rgb())

        buffer = io.BytesIO()
        pil_image.save(buffer, format='PNG')
        image_bytes = buffer.getvalue()
        base64_image = base64.b64encode(image_bytes).decode('utf-8')

        return f"data:image/png;base64,{base64_image}"

    def recognize(self, bitmap: Bitmap, language: str, report: ProgressReporter) -> Recognition:
        if self.client is None:
            raise RuntimeError("MistralOCR used before initialize()")

        report(0.0)
        image_url = self._encode_image_base64(bitmap)
        report(0.2)

        ocr_response = self.client.ocr.process(
            model=self.model,
            document={
                "type": "image_url",
                "image_url": image_url
            }
        )

        text = ""
        if hasattr(ocr_response, 'pages') and ocr_response.pages and len(ocr_response.pages) > 0:
            first_page = ocr_response.pages[0]
            if hasattr(first_page, 'markdown') and first_page.markdown:
                text = first_page.markdown.strip()
        report(1.0)

        # Mistral doesn't provide confidence scores, use 100 if text was found
        confidence = 100.0 if text else 0.0
        lines = [OCRLine(text=line, confidence=confidence) for line in text.splitlines() if line.strip()]
        return Recognition(text=text, confidence=confidence, lines=lines)

    def terminate(self) -> None:
        self.client = None


def create_backend(engine: str,
                   tesseract_cmd: str | None = None,
                   mistral_api_key: str | None = None) -> RecognitionBackend:
    """
    Factory for recognition backends.

    Args:
        engine: "tesseract" or "mistral"
        tesseract_cmd: Optional path to the tesseract binary
        mistral_api_key: API key for Mistral OCR

    Raises:
        ValueError: If the engine name is unknown
    """
    if engine == "tesseract":
        return TesseractOCR(tesseract_cmd=tesseract_cmd)
    elif engine == "mistral":
        return MistralOCR(api_key=mistral_api_key)
    else:
        raise ValueError(f"Unsupported OCR engine: {engine}")


# ============================================================================
# Engine handle
# ============================================================================

class OCREngine:
    """
    Reusable recognition worker with an explicit owner-counted lifecycle.

    Owners call acquire() before use and release() when done; the worker is
    shut down when the last owner releases it. A released engine starts a
    fresh worker on the next recognize() call.
    """

    def __init__(self, backend: RecognitionBackend, language: str = "eng"):
        self.backend = backend
        self.default_language = language
        self._executor: ThreadPoolExecutor | None = None
        self._worker_language: str | None = None
        self._owners = 0
        self._busy = False

    @property
    def worker_initialized(self) -> bool:
        return self._executor is not None

    @property
    def busy(self) -> bool:
        return self._busy

    def is_available(self) -> bool:
        """Whether recognition can run in this environment."""
        return self.backend.is_available()

    def status(self) -> dict[str, bool]:
        """Availability snapshot for diagnostics."""
        return {
            "available": self.is_available(),
            "worker_initialized": self.worker_initialized,
            "busy": self._busy,
        }

    def acquire(self) -> "OCREngine":
        self._owners += 1
        return self

    def _drop_owner(self) -> bool:
        if self._owners > 0:
            self._owners -= 1
        return self._owners == 0

    def release(self) -> None:
        """Drop one owner; shut the worker down when none remain."""
        if self._drop_owner():
            self.shutdown()

    async def arelease(self) -> None:
        """release() for event-loop callers; never blocks the loop."""
        if self._drop_owner():
            await self.ashutdown()

    def shutdown(self) -> None:
        """
        Tear the worker down. Idempotent.

        Blocks until any in-flight recognition finishes; from a coroutine use
        ashutdown() instead.
        """
        executor, self._executor = self._executor, None
        if executor is None:
            return
        try:
            executor.submit(self.backend.terminate).result()
        except Exception:
            logger.warning("Error while terminating OCR backend", exc_info=True)
        finally:
            executor.shutdown(wait=True)
            self._worker_language = None
            logger.info("OCR worker terminated")

    async def ashutdown(self) -> None:
        """Tear the worker down without blocking the event loop. Idempotent."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        loop = asyncio.get_running_loop()
        try:
            # Queued behind any in-flight recognition on the single worker
            await loop.run_in_executor(executor, self.backend.terminate)
        except Exception:
            logger.warning("Error while terminating OCR backend", exc_info=True)
        finally:
            executor.shutdown(wait=False)
            self._worker_language = None
            logger.info("OCR worker terminated")

    async def recognize(self,
                        bitmap: Bitmap,
                        language: str | None = None,
                        on_progress: ProgressReporter | None = None) -> OCRResult:
        """
        Recognize text in a bitmap on the shared worker.

        Args:
            bitmap: Decoded image
            language: Tesseract language code (default: engine language)
            on_progress: Receives non-decreasing progress values in [0, 1]

        Returns:
            OCRResult; empty text means nothing was found

        Raises:
            EngineBusy: If another recognition is in flight
            RecognitionFailed: If the backend fails
        """
        if self._busy:
            raise EngineBusy()
        self._busy = True

        language = language or self.default_language
        loop = asyncio.get_running_loop()
        start_time = time.perf_counter()
        last_progress = 0.0

        def deliver(value: float) -> None:
            nonlocal last_progress
            value = min(1.0, max(last_progress, value))
            last_progress = value
            if on_progress is not None:
                on_progress(value)

        def report(value: float) -> None:
            # Called on the worker thread
            loop.call_soon_threadsafe(deliver, value)

        try:
            executor = await self._ensure_worker(language)
            recognition = await loop.run_in_executor(
                executor, self.backend.recognize, bitmap, language, report
            )
        except (EngineBusy, RecognitionFailed):
            raise
        except Exception as e:
            logger.error("OCR error: %s", e)
            raise RecognitionFailed(str(e)) from e
        finally:
            self._busy = False

        deliver(1.0)
        duration = int((time.perf_counter() - start_time) * 1000)
        logger.info("OCR completed in %dms", duration)

        return OCRResult(
            text=recognition.text,
            confidence=recognition.confidence,
            lines=recognition.lines,
            elapsed_ms=duration,
        )

    async def _ensure_worker(self, language: str) -> ThreadPoolExecutor:
        """Start the worker on first use; re-initialize on language change."""
        loop = asyncio.get_running_loop()

        if self._executor is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ocr-worker")
            try:
                await loop.run_in_executor(executor, self.backend.initialize, language)
            except Exception:
                executor.shutdown(wait=False)
                raise
            self._executor = executor
            self._worker_language = language
            logger.info("OCR worker initialized")
        elif language != self._worker_language:
            await loop.run_in_executor(self._executor, self.backend.initialize, language)
            self._worker_language = language
            logger.info("OCR worker re-initialized for '%s'", language)

        return self._executor
