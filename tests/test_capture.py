"""
Unit tests for the capture session using fake video sources.
"""

import asyncio
import threading

import pytest
import numpy as np

from docscan import capture as capture_module
from docscan.capture import (
    CaptureSession,
    CaptureState,
    ConstraintProfile,
    DeviceAccessError,
    MINIMAL_PROFILE,
    PREFERRED_PROFILE,
    VideoSource,
)
from docscan.errors import (
    Cancelled,
    CaptureError,
    DeviceBusy,
    DeviceNotFound,
    InsecureContext,
    NotReady,
    PermissionDenied,
    Unsupported,
    UnsupportedConstraints,
    classify_capture_error,
)


# ============================================================================
# Fakes
# ============================================================================

class FakeStream:
    def __init__(self, frame=None, orientation: int = 0, torch: bool = False, fail_on_stop: bool = False):
        self.frame = frame if frame is not None else np.full((20, 30, 3), 200, dtype=np.uint8)
        self.orientation = orientation
        self.torch = torch
        self.torch_on = False
        self.stopped = 0
        self.fail_on_stop = fail_on_stop

    def read_frame(self):
        return self.frame

    def has_torch(self) -> bool:
        return self.torch

    def set_torch(self, on: bool) -> None:
        self.torch_on = on

    def stop(self) -> None:
        self.stopped += 1
        if self.fail_on_stop:
            raise RuntimeError("device vanished")


class FakeSource(VideoSource):
    """Fails with the given error names in order, then hands out `stream`."""

    def __init__(self, errors: list[str] | None = None, stream: FakeStream | None = None, secure: bool = True):
        self.errors = list(errors or [])
        self.stream = stream or FakeStream()
        self.secure = secure
        self.opened: list[ConstraintProfile] = []

    def is_secure_context(self) -> bool:
        return self.secure

    def open(self, profile: ConstraintProfile):
        self.opened.append(profile)
        if self.errors:
            raise DeviceAccessError(self.errors.pop(0))
        return self.stream


@pytest.fixture(autouse=True)
def no_active_session():
    """Each test starts without a globally active session."""
    capture_module._active_session = None
    yield
    capture_module._active_session = None


# ============================================================================
# Error Classification Tests
# ============================================================================

@pytest.mark.parametrize("name, expected", [
    ("NotAllowedError", PermissionDenied),
    ("NotFoundError", DeviceNotFound),
    ("NotReadableError", DeviceBusy),
    ("OverconstrainedError", UnsupportedConstraints),
    ("SecurityError", InsecureContext),
    ("AbortError", Cancelled),
])
def test_classify_capture_error(name: str, expected: type):
    assert isinstance(classify_capture_error(name), expected)


def test_classify_unknown_error_is_generic():
    error = classify_capture_error("SomethingOdd", "weird")
    assert type(error) is CaptureError
    assert str(error) == "weird"


def test_capture_errors_carry_suggestion():
    error = PermissionDenied()
    assert "upload a file" in error.user_message


# ============================================================================
# Lifecycle Tests
# ============================================================================

def test_start_goes_live():
    source = FakeSource()
    session = CaptureSession(source)
    asyncio.run(session.start())

    assert session.state is CaptureState.LIVE
    assert session.profile == PREFERRED_PROFILE
    assert session.is_live


def test_permission_denied_leaves_session_idle():
    """NotAllowedError: Idle, no stream held, message names the permission problem."""
    source = FakeSource(errors=["NotAllowedError"])
    session = CaptureSession(source)

    with pytest.raises(PermissionDenied) as exc_info:
        asyncio.run(session.start())

    assert session.state is CaptureState.IDLE
    assert session._stream is None
    assert "permission" in exc_info.value.user_message.lower()
    # Permission errors are not retried with weaker constraints
    assert source.opened == [PREFERRED_PROFILE]


def test_falls_back_to_minimal_profile():
    source = FakeSource(errors=["OverconstrainedError"])
    session = CaptureSession(source)
    asyncio.run(session.start())

    assert source.opened == [PREFERRED_PROFILE, MINIMAL_PROFILE]
    assert session.profile == MINIMAL_PROFILE


def test_all_profiles_rejected():
    source = FakeSource(errors=["OverconstrainedError", "OverconstrainedError"])
    session = CaptureSession(source)
    with pytest.raises(UnsupportedConstraints):
        asyncio.run(session.start())
    assert session.state is CaptureState.IDLE


def test_insecure_context_rejected():
    source = FakeSource(secure=False)
    session = CaptureSession(source)
    with pytest.raises(InsecureContext):
        asyncio.run(session.start())
    assert source.opened == []
    assert session.state is CaptureState.IDLE


def test_requires_profiles():
    with pytest.raises(ValueError):
        CaptureSession(FakeSource(), profiles=())


def test_stop_is_idempotent():
    source = FakeSource()
    session = CaptureSession(source)
    asyncio.run(session.start())

    session.stop()
    session.stop()

    assert session.state is CaptureState.IDLE
    assert source.stream.stopped == 1


def test_stop_swallows_release_errors():
    """Teardown completes even when the device fails to release."""
    source = FakeSource(stream=FakeStream(fail_on_stop=True))
    session = CaptureSession(source)
    asyncio.run(session.start())

    session.stop()
    assert session.state is CaptureState.IDLE


def test_stop_before_start_is_safe():
    session = CaptureSession(FakeSource())
    session.stop()
    assert session.state is CaptureState.IDLE


def test_new_session_stops_previous():
    """Only one session holds a live stream at a time."""
    first_source = FakeSource()
    second_source = FakeSource()
    first = CaptureSession(first_source)
    second = CaptureSession(second_source)

    async def run():
        await first.start()
        await second.start()

    asyncio.run(run())

    assert first.state is CaptureState.IDLE
    assert first_source.stream.stopped == 1
    assert second.state is CaptureState.LIVE


def test_stop_during_request_cancels():
    """stop() while the device is still opening releases the late stream."""
    stream = FakeStream()

    class SlowSource(VideoSource):
        def __init__(self):
            self.session: CaptureSession | None = None

        def open(self, profile):
            # Simulates the user backing out while the device is opening
            self.session.stop()
            return stream

    source = SlowSource()
    session = CaptureSession(source)
    source.session = session

    with pytest.raises(Cancelled):
        asyncio.run(session.start())

    assert session.state is CaptureState.IDLE
    assert stream.stopped == 1


def test_cancelled_start_releases_late_stream():
    """A start() task cancelled mid-open still releases the stream the device hands back."""
    stream = FakeStream()
    entered = threading.Event()
    gate = threading.Event()

    class GatedSource(VideoSource):
        def open(self, profile):
            entered.set()
            gate.wait(timeout=5)
            return stream

    session = CaptureSession(GatedSource())

    async def run():
        task = asyncio.create_task(session.start())
        await asyncio.to_thread(entered.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        gate.set()
        for _ in range(200):
            if stream.stopped:
                break
            await asyncio.sleep(0.01)

    asyncio.run(run())

    assert session.state is CaptureState.IDLE
    assert session._stream is None
    assert stream.stopped == 1


def test_unexpected_source_error_becomes_capture_error():
    class BrokenSource(VideoSource):
        def open(self, profile):
            raise OSError("video device I/O error")

    session = CaptureSession(BrokenSource())
    with pytest.raises(CaptureError) as exc_info:
        asyncio.run(session.start())

    assert "I/O error" in str(exc_info.value)
    assert exc_info.value.user_message.endswith(CaptureError.suggestion)
    assert session.state is CaptureState.IDLE


def test_context_manager_releases():
    source = FakeSource()

    async def run():
        async with CaptureSession(source) as camera:
            assert camera.is_live
        return camera

    camera = asyncio.run(run())
    assert camera.state is CaptureState.IDLE
    assert source.stream.stopped == 1


# ============================================================================
# Capture Tests
# ============================================================================

def test_capture_frame_returns_bitmap():
    source = FakeSource()
    session = CaptureSession(source)

    async def run():
        await session.start()
        return await session.capture_frame()

    bitmap = asyncio.run(run())
    assert (bitmap.width, bitmap.height) == (30, 20)
    assert session.state is CaptureState.LIVE


def test_capture_frame_applies_orientation():
    source = FakeSource(stream=FakeStream(orientation=90))
    session = CaptureSession(source)

    async def run():
        await session.start()
        return await session.capture_frame()

    bitmap = asyncio.run(run())
    assert (bitmap.width, bitmap.height) == (20, 30)


def test_capture_frame_when_idle():
    session = CaptureSession(FakeSource())
    with pytest.raises(NotReady):
        asyncio.run(session.capture_frame())


def test_capture_frame_without_decodable_frame():
    stream = FakeStream()
    source = FakeSource(stream=stream)
    session = CaptureSession(source)

    async def run():
        await session.start()
        stream.frame = None
        stream.read_frame = lambda: None
        return await session.capture_frame()

    with pytest.raises(NotReady):
        asyncio.run(run())
    assert session.state is CaptureState.LIVE


# ============================================================================
# Torch Tests
# ============================================================================

def test_torch_supported():
    stream = FakeStream(torch=True)
    session = CaptureSession(FakeSource(stream=stream))
    asyncio.run(session.start())

    assert session.torch_supported
    session.toggle_light(True)
    assert stream.torch_on


def test_torch_unsupported():
    session = CaptureSession(FakeSource())
    asyncio.run(session.start())
    with pytest.raises(Unsupported):
        session.toggle_light(True)


def test_torch_when_idle():
    session = CaptureSession(FakeSource(stream=FakeStream(torch=True)))
    with pytest.raises(NotReady):
        session.toggle_light(True)
