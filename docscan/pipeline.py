"""
Two-stage recognition pipeline: OCR, then optional AI enhancement.

Within one process() call OCR always finishes before enhancement starts. A
second process() call while one is in flight is rejected with EngineBusy,
because the OCR worker is a single shared resource.
"""

import logging
from dataclasses import dataclass

from .bitmap import Bitmap
from .enhancer import EnhancementResult, EnhancementStatus, STATUS_MESSAGES, TextEnhancer
from .errors import EngineBusy, OCRUnavailable
from .ocr import OCREngine, OCRResult
from .progress import (
    PHASE_DONE,
    PHASE_ENHANCING,
    PHASE_OCR,
    PHASE_OCR_COMPLETE,
    ProgressChannel,
)

logger = logging.getLogger(__name__)

NO_TEXT_MESSAGE = "No text detected in image"
OCR_COMPLETE_MESSAGE = "OCR complete"
# Enhancement is only attempted for texts strictly longer than this
ENHANCE_MIN_CHARS = 10


@dataclass(frozen=True)
class PipelineResult:
    text: str
    confidence: float
    enhanced: bool
    status_message: str
    original_text: str | None = None
    ocr: OCRResult | None = None
    enhancement: EnhancementResult | None = None

    @property
    def no_text(self) -> bool:
        """Soft outcome: OCR ran but found nothing."""
        return not self.text.strip()

    @property
    def rate_limited(self) -> bool:
        return self.enhancement is not None and self.enhancement.rate_limited


class PipelineOrchestrator:
    """
    Owns one reference to the OCR engine and composes it with the enhancer.

    Use as an async context manager, or call close() at session teardown, so
    the OCR worker is released.
    """

    def __init__(self, engine: OCREngine, enhancer: TextEnhancer | None = None):
        self.engine = engine.acquire()
        self.enhancer = enhancer
        self._in_flight = False
        self._closed = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def process(self,
                      bitmap: Bitmap,
                      enhance: bool = False,
                      language: str | None = None,
                      progress: ProgressChannel | None = None) -> PipelineResult:
        """
        Run OCR and, if requested, AI enhancement on one bitmap.

        Args:
            bitmap: Image to recognize
            enhance: Whether to send the OCR text for AI enhancement
            language: OCR language (default: engine language)
            progress: Channel receiving "ocr", "ocr-complete", "enhancing"
                and "done" events

        Returns:
            PipelineResult; `no_text` is True when nothing was recognized

        Raises:
            EngineBusy: If another process() call is in flight
            OCRUnavailable: If no OCR engine can run here
            RecognitionFailed: If OCR fails hard
        """
        if self._closed:
            raise RuntimeError("PipelineOrchestrator is closed")
        if self._in_flight:
            raise EngineBusy()
        self._in_flight = True
        try:
            return await self._process(bitmap, enhance, language, progress)
        finally:
            self._in_flight = False

    async def _process(self,
                       bitmap: Bitmap,
                       enhance: bool,
                       language: str | None,
                       progress: ProgressChannel | None) -> PipelineResult:
        def publish(phase: str, value: float) -> None:
            if progress is not None:
                progress.publish(phase, value)

        if not self.engine.is_available():
            raise OCRUnavailable()

        # Stage 1: OCR
        publish(PHASE_OCR, 0.0)
        ocr_result = await self.engine.recognize(
            bitmap,
            language=language,
            on_progress=lambda p: publish(PHASE_OCR, p),
        )

        if ocr_result.is_empty:
            publish(PHASE_DONE, 1.0)
            return PipelineResult(
                text="",
                confidence=0.0,
                enhanced=False,
                status_message=NO_TEXT_MESSAGE,
                ocr=ocr_result,
            )

        publish(PHASE_OCR_COMPLETE, 1.0)

        if not enhance:
            publish(PHASE_DONE, 1.0)
            return PipelineResult(
                text=ocr_result.text,
                confidence=ocr_result.confidence,
                enhanced=False,
                status_message=OCR_COMPLETE_MESSAGE,
                ocr=ocr_result,
            )

        # Stage 2: AI enhancement. Offline and disabled are decided by the
        # enhancer itself so the status names the exact reason.
        if len(ocr_result.text.strip()) <= ENHANCE_MIN_CHARS:
            enhancement_status = EnhancementStatus.TOO_SHORT
        elif self.enhancer is None:
            enhancement_status = EnhancementStatus.DISABLED
        else:
            publish(PHASE_ENHANCING, 0.0)
            enhancement = await self.enhancer.enhance_async(ocr_result.text)
            publish(PHASE_ENHANCING, 1.0)
            publish(PHASE_DONE, 1.0)
            if not enhancement.was_enhanced:
                logger.info("Using raw OCR text: %s", enhancement.status_message)
            return PipelineResult(
                text=enhancement.text,
                confidence=ocr_result.confidence,
                enhanced=enhancement.was_enhanced,
                status_message=enhancement.status_message,
                original_text=ocr_result.text,
                ocr=ocr_result,
                enhancement=enhancement,
            )

        publish(PHASE_DONE, 1.0)
        return PipelineResult(
            text=ocr_result.text,
            confidence=ocr_result.confidence,
            enhanced=False,
            status_message=STATUS_MESSAGES[enhancement_status],
            original_text=ocr_result.text,
            ocr=ocr_result,
        )

    def close(self) -> None:
        """Release this orchestrator's hold on the OCR worker. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.engine.release()

    async def aclose(self) -> None:
        """close() for coroutines: the event loop keeps running during teardown."""
        if self._closed:
            return
        self._closed = True
        await self.engine.arelease()

    async def __aenter__(self) -> "PipelineOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
