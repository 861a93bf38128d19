"""
Unit tests for the OCR engine with a scripted backend, plus Tesseract output
parsing with canned image_to_data results.

Tests that need a real Tesseract binary are marked 'slow':
    pytest tests/test_ocr.py -m slow
"""

import asyncio
import threading

import pytest
import numpy as np
import cv2

from docscan import ocr as ocr_module
from docscan.bitmap import Bitmap
from docscan.errors import EngineBusy, RecognitionFailed
from docscan.ocr import (
    MistralOCR,
    OCREngine,
    Recognition,
    RecognitionBackend,
    TesseractOCR,
    create_backend,
)


# ============================================================================
# Fixtures
# ============================================================================

class ScriptedBackend(RecognitionBackend):
    """Records calls and returns fixed text."""

    def __init__(self, text: str = "Hello world", confidence: float = 91.0,
                 progress: tuple[float, ...] = (0.0, 0.5, 0.3, 0.9), fail: Exception | None = None):
        self.text = text
        self.confidence = confidence
        self.progress = progress
        self.fail = fail
        self.initialized: list[str] = []
        self.recognized: list[str] = []
        self.terminated = 0
        self.threads: set[str] = set()
        self.gate: threading.Event | None = None
        self.started = threading.Event()

    def is_available(self) -> bool:
        return True

    def initialize(self, language: str) -> None:
        self.threads.add(threading.current_thread().name)
        self.initialized.append(language)

    def recognize(self, bitmap, language, report) -> Recognition:
        self.threads.add(threading.current_thread().name)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        for value in self.progress:
            report(value)
        if self.fail is not None:
            raise self.fail
        self.recognized.append(language)
        return Recognition(text=self.text, confidence=self.confidence, lines=[])

    def terminate(self) -> None:
        self.terminated += 1


@pytest.fixture
def page() -> Bitmap:
    return Bitmap.blank(60, 40)


@pytest.fixture
def text_image() -> Bitmap:
    """White image with large black text."""
    img = np.ones((200, 800, 3), dtype=np.uint8) * 255
    cv2.putText(img, "HELLO WORLD", (40, 130), cv2.FONT_HERSHEY_SIMPLEX, 3, (0, 0, 0), 6)
    return Bitmap.from_bgr(img)


# ============================================================================
# Engine Lifecycle Tests
# ============================================================================

def test_worker_is_lazy(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)
    assert not engine.worker_initialized
    assert backend.initialized == []

    asyncio.run(engine.recognize(page))
    assert engine.worker_initialized
    assert backend.initialized == ["eng"]
    engine.shutdown()


def test_worker_reused_between_calls(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)

    async def run():
        await engine.recognize(page)
        await engine.recognize(page)

    asyncio.run(run())
    assert backend.initialized == ["eng"]
    assert backend.recognized == ["eng", "eng"]
    engine.shutdown()


def test_recognition_runs_on_worker_thread(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)
    asyncio.run(engine.recognize(page))

    assert len(backend.threads) == 1
    assert next(iter(backend.threads)).startswith("ocr-worker")
    assert threading.current_thread().name not in backend.threads
    engine.shutdown()


def test_language_change_reinitializes(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)

    async def run():
        await engine.recognize(page)
        await engine.recognize(page, language="deu")

    asyncio.run(run())
    assert backend.initialized == ["eng", "deu"]
    assert backend.recognized == ["eng", "deu"]
    engine.shutdown()


def test_release_by_last_owner_terminates(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)
    engine.acquire()
    engine.acquire()
    asyncio.run(engine.recognize(page))

    engine.release()
    assert engine.worker_initialized
    engine.release()
    assert not engine.worker_initialized
    assert backend.terminated == 1


def test_shutdown_is_idempotent(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)
    asyncio.run(engine.recognize(page))

    engine.shutdown()
    engine.shutdown()
    assert backend.terminated == 1


def test_restarts_after_shutdown(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend)
    asyncio.run(engine.recognize(page))
    engine.shutdown()

    asyncio.run(engine.recognize(page))
    assert backend.initialized == ["eng", "eng"]
    engine.shutdown()


def test_async_shutdown_keeps_loop_running(page: Bitmap):
    """Teardown waits for the in-flight recognition without stalling other coroutines."""
    backend = ScriptedBackend()
    backend.gate = threading.Event()
    engine = OCREngine(backend)

    async def run():
        recognition = asyncio.create_task(engine.recognize(page))
        await asyncio.to_thread(backend.started.wait, 5)

        closing = asyncio.create_task(engine.ashutdown())
        await asyncio.sleep(0.05)
        still_closing = not closing.done()

        backend.gate.set()
        result = await recognition
        await closing
        return still_closing, result

    still_closing, result = asyncio.run(run())

    assert still_closing
    assert result.text == "Hello world"
    assert backend.terminated == 1
    assert not engine.worker_initialized


def test_async_release_by_last_owner(page: Bitmap):
    backend = ScriptedBackend()
    engine = OCREngine(backend).acquire()

    async def run():
        await engine.recognize(page)
        await engine.arelease()
        await engine.ashutdown()

    asyncio.run(run())
    assert not engine.worker_initialized
    assert backend.terminated == 1


def test_status(page: Bitmap):
    engine = OCREngine(ScriptedBackend())
    assert engine.status() == {"available": True, "worker_initialized": False, "busy": False}


# ============================================================================
# Recognition Tests
# ============================================================================

def test_recognize_result(page: Bitmap):
    engine = OCREngine(ScriptedBackend(text="Invoice 42", confidence=88.5))
    result = asyncio.run(engine.recognize(page))

    assert result.text == "Invoice 42"
    assert result.confidence == 88.5
    assert result.elapsed_ms >= 0
    assert not result.is_empty
    engine.shutdown()


def test_progress_is_monotonic(page: Bitmap):
    """A backend reporting 0.5 then 0.3 never makes progress go backwards."""
    engine = OCREngine(ScriptedBackend(progress=(0.0, 0.5, 0.3, 0.9)))
    values: list[float] = []
    asyncio.run(engine.recognize(page, on_progress=values.append))

    assert values == sorted(values)
    assert values[-1] == 1.0
    assert all(0.0 <= v <= 1.0 for v in values)
    engine.shutdown()


def test_empty_text_is_soft_result(page: Bitmap):
    engine = OCREngine(ScriptedBackend(text="   \n"))
    result = asyncio.run(engine.recognize(page))
    assert result.is_empty
    engine.shutdown()


def test_backend_failure_wrapped(page: Bitmap):
    engine = OCREngine(ScriptedBackend(fail=RuntimeError("engine crashed")))
    with pytest.raises(RecognitionFailed, match="engine crashed"):
        asyncio.run(engine.recognize(page))
    assert not engine.busy
    engine.shutdown()


def test_initialize_failure_wrapped(page: Bitmap):
    engine = OCREngine(MistralOCR(api_key=None))
    with pytest.raises(RecognitionFailed, match="MISTRAL_API_KEY"):
        asyncio.run(engine.recognize(page))
    assert not engine.worker_initialized


def test_concurrent_recognize_rejected(page: Bitmap):
    backend = ScriptedBackend()
    backend.gate = threading.Event()
    engine = OCREngine(backend)

    async def run():
        first = asyncio.create_task(engine.recognize(page))
        await asyncio.sleep(0)
        with pytest.raises(EngineBusy):
            await engine.recognize(page)
        backend.gate.set()
        return await first

    result = asyncio.run(run())
    assert result.text == "Hello world"
    engine.shutdown()


# ============================================================================
# Backend Tests
# ============================================================================

def test_create_backend():
    assert isinstance(create_backend("tesseract"), TesseractOCR)
    assert isinstance(create_backend("mistral", mistral_api_key="key"), MistralOCR)
    with pytest.raises(ValueError, match="Unsupported OCR engine"):
        create_backend("easyocr")


def test_mistral_unavailable_without_key():
    assert not MistralOCR(api_key=None).is_available()
    assert MistralOCR(api_key="key").is_available()


def test_mistral_encodes_png_data_uri(page: Bitmap):
    uri = MistralOCR(api_key="key")._encode_image_base64(page)
    assert uri.startswith("data:image/png;base64,")


def test_tesseract_groups_words_into_lines(monkeypatch, page: Bitmap):
    data = {
        "text": ["", "Hello", "world", "Second", "  ", "line"],
        "conf": ["-1", "90", "80", "70", "-1", "60"],
        "block_num": [1, 1, 1, 1, 1, 1],
        "par_num": [1, 1, 1, 1, 1, 1],
        "line_num": [0, 1, 1, 2, 2, 2],
        "left": [0, 10, 60, 10, 0, 80],
        "top": [0, 5, 6, 30, 0, 31],
        "width": [0, 40, 40, 60, 0, 30],
        "height": [0, 10, 10, 12, 0, 12],
    }
    monkeypatch.setattr(ocr_module, "_image_to_data", lambda *args, **kwargs: data)

    progress: list[float] = []
    recognition = TesseractOCR().recognize(page, "eng", progress.append)

    assert recognition.text == "Hello world\nSecond line"
    assert recognition.confidence == pytest.approx(75.0)
    assert [line.text for line in recognition.lines] == ["Hello world", "Second line"]
    assert recognition.lines[0].bbox.x0 == 10
    assert recognition.lines[0].bbox.x1 == 100
    assert progress[-1] == 1.0


def test_tesseract_no_words(monkeypatch, page: Bitmap):
    data = {key: [] for key in ("text", "conf", "block_num", "par_num", "line_num", "left", "top", "width", "height")}
    monkeypatch.setattr(ocr_module, "_image_to_data", lambda *args, **kwargs: data)

    recognition = TesseractOCR().recognize(page, "eng", lambda value: None)
    assert recognition.text == ""
    assert recognition.confidence == 0.0


# ============================================================================
# Real Tesseract Tests
# ============================================================================

@pytest.fixture
def tesseract_engine():
    backend = TesseractOCR()
    if not backend.is_available():
        pytest.skip("Tesseract binary not installed")
    engine = OCREngine(backend)
    yield engine
    engine.shutdown()


@pytest.mark.slow
def test_tesseract_reads_text(tesseract_engine: OCREngine, text_image: Bitmap):
    result = asyncio.run(tesseract_engine.recognize(text_image))
    assert "HELLO" in result.text.upper()
    assert result.confidence > 0


@pytest.mark.slow
def test_tesseract_blank_image(tesseract_engine: OCREngine, page: Bitmap):
    result = asyncio.run(tesseract_engine.recognize(page))
    assert result.is_empty
