"""
Unit tests for the recognition pipeline and its progress channel.
"""

import asyncio
import threading
from unittest.mock import Mock

import pytest

from docscan.bitmap import Bitmap
from docscan.enhancer import EnhancementResult, EnhancementStatus, TextEnhancer
from docscan.errors import EngineBusy, OCRUnavailable, RecognitionFailed
from docscan.ocr import OCREngine, Recognition, RecognitionBackend
from docscan.pipeline import NO_TEXT_MESSAGE, PipelineOrchestrator
from docscan.progress import ProgressChannel, ProgressEvent

LONG_TEXT = "Quarterly report for the regional office"


class FixedBackend(RecognitionBackend):
    def __init__(self, text: str = LONG_TEXT, available: bool = True, fail: bool = False):
        self.text = text
        self.available = available
        self.fail = fail
        self.calls = 0
        self.gate: threading.Event | None = None

    def is_available(self) -> bool:
        return self.available

    def initialize(self, language: str) -> None:
        pass

    def recognize(self, bitmap, language, report) -> Recognition:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        report(0.5)
        if self.fail:
            raise RuntimeError("worker died")
        return Recognition(text=self.text, confidence=80.0, lines=[])


def enhanced_result(text: str) -> EnhancementResult:
    return EnhancementResult(
        text="Cleaned: " + text,
        was_enhanced=True,
        original_text=text,
        status=EnhancementStatus.ENHANCED,
        status_message="Text enhanced with AI",
    )


def mock_enhancer(result=None) -> Mock:
    enhancer = Mock(spec=TextEnhancer)

    async def enhance_async(text):
        return result or enhanced_result(text)

    enhancer.enhance_async.side_effect = enhance_async
    return enhancer


@pytest.fixture
def page() -> Bitmap:
    return Bitmap.blank(40, 30)


# ============================================================================
# Progress Channel Tests
# ============================================================================

def test_progress_channel_fan_out():
    async def run():
        channel = ProgressChannel()
        first = channel.subscribe()
        second = channel.subscribe()
        channel.publish("ocr", 0.5)
        channel.close()
        return [event async for event in first], [event async for event in second]

    first, second = asyncio.run(run())
    assert first == second == [ProgressEvent("ocr", 0.5)]


def test_progress_values_clamped():
    async def run():
        channel = ProgressChannel()
        subscription = channel.subscribe()
        channel.publish("ocr", 1.7)
        channel.publish("ocr", -0.2)
        return subscription.drain()

    events = asyncio.run(run())
    assert [event.progress for event in events] == [1.0, 0.0]


def test_progress_cancelled_subscription_stops():
    async def run():
        channel = ProgressChannel()
        subscription = channel.subscribe()
        subscription.cancel()
        channel.publish("ocr", 0.5)
        return [event async for event in subscription]

    assert asyncio.run(run()) == []


def test_progress_publish_after_close_ignored():
    async def run():
        channel = ProgressChannel()
        subscription = channel.subscribe()
        channel.close()
        channel.close()
        channel.publish("ocr", 0.5)
        late = channel.subscribe()
        return subscription.drain(), [event async for event in late]

    events, late = asyncio.run(run())
    assert events == []
    assert late == []


def test_progress_event_percent():
    assert ProgressEvent("ocr", 0.456).percent == 46


# ============================================================================
# Pipeline Tests
# ============================================================================

def test_ocr_only(page: Bitmap):
    engine = OCREngine(FixedBackend())

    async def run():
        async with PipelineOrchestrator(engine) as pipeline:
            return await pipeline.process(page)

    result = asyncio.run(run())
    assert result.text == LONG_TEXT
    assert result.confidence == 80.0
    assert not result.enhanced
    assert not engine.worker_initialized


def test_enhancement_preserves_original(page: Bitmap):
    enhancer = mock_enhancer()
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()), enhancer)

    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()

    assert result.enhanced
    assert result.text == "Cleaned: " + LONG_TEXT
    assert result.original_text == LONG_TEXT
    enhancer.enhance_async.assert_called_once_with(LONG_TEXT)


def test_progress_phases_in_order(page: Bitmap):
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()), mock_enhancer())

    async def run():
        channel = ProgressChannel()
        subscription = channel.subscribe()
        await pipeline.process(page, enhance=True, progress=channel)
        return subscription.drain()

    events = asyncio.run(run())
    pipeline.close()

    phases = [event.phase for event in events]
    # OCR finishes before enhancement starts
    assert phases.index("ocr-complete") < phases.index("enhancing")
    assert phases[0] == "ocr"
    assert phases[-1] == "done"
    ocr_progress = [event.progress for event in events if event.phase == "ocr"]
    assert ocr_progress == sorted(ocr_progress)


def test_no_text_skips_enhancement(page: Bitmap):
    enhancer = mock_enhancer()
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend(text="  \n ")), enhancer)

    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()

    assert result.no_text
    assert result.status_message == NO_TEXT_MESSAGE
    enhancer.enhance_async.assert_not_called()


def test_short_text_not_enhanced(page: Bitmap):
    enhancer = mock_enhancer()
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend(text="Total: 42")), enhancer)

    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()

    assert result.text == "Total: 42"
    assert result.status_message == "Text too short for enhancement"
    enhancer.enhance_async.assert_not_called()


def test_exactly_ten_characters_not_enhanced(page: Bitmap):
    enhancer = mock_enhancer()
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend(text="0123456789")), enhancer)
    asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()
    enhancer.enhance_async.assert_not_called()


def test_no_enhancer_reports_disabled(page: Bitmap):
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()))
    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()
    assert result.status_message == "AI enhancement disabled"
    assert result.text == LONG_TEXT


def test_offline_still_asks_enhancer(page: Bitmap):
    """The enhancer decides about offline mode so the status names the reason."""
    offline = EnhancementResult(
        text=LONG_TEXT,
        was_enhanced=False,
        original_text=LONG_TEXT,
        status=EnhancementStatus.OFFLINE,
        status_message="Offline mode - AI enhancement unavailable",
    )
    enhancer = mock_enhancer(offline)
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()), enhancer)

    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()

    enhancer.enhance_async.assert_called_once()
    assert not result.enhanced
    assert result.text == LONG_TEXT
    assert "Offline" in result.status_message


def test_rate_limited_surfaces(page: Bitmap):
    limited = EnhancementResult(
        text=LONG_TEXT,
        was_enhanced=False,
        original_text=LONG_TEXT,
        status=EnhancementStatus.RATE_LIMITED,
        status_message="Rate limit exceeded. Please try again in 30 seconds",
        retry_after=30,
    )
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()), mock_enhancer(limited))
    result = asyncio.run(pipeline.process(page, enhance=True))
    pipeline.close()

    assert result.rate_limited
    assert result.enhancement.retry_after == 30


def test_unavailable_engine_fails_fast(page: Bitmap):
    backend = FixedBackend(available=False)
    pipeline = PipelineOrchestrator(OCREngine(backend))

    with pytest.raises(OCRUnavailable):
        asyncio.run(pipeline.process(page))
    assert backend.calls == 0
    pipeline.close()


def test_recognition_failure_propagates(page: Bitmap):
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend(fail=True)))
    with pytest.raises(RecognitionFailed):
        asyncio.run(pipeline.process(page))
    assert not pipeline.in_flight
    pipeline.close()


def test_second_process_rejected(page: Bitmap):
    backend = FixedBackend()
    backend.gate = threading.Event()
    pipeline = PipelineOrchestrator(OCREngine(backend))

    async def run():
        first = asyncio.create_task(pipeline.process(page))
        await asyncio.sleep(0)
        with pytest.raises(EngineBusy):
            await pipeline.process(page)
        backend.gate.set()
        return await first

    result = asyncio.run(run())
    pipeline.close()
    assert result.text == LONG_TEXT
    assert backend.calls == 1


def test_closed_pipeline_rejects(page: Bitmap):
    pipeline = PipelineOrchestrator(OCREngine(FixedBackend()))
    pipeline.close()
    pipeline.close()
    with pytest.raises(RuntimeError):
        asyncio.run(pipeline.process(page))
