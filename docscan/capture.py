"""
Live camera capture.

CaptureSession owns one video stream at a time:

    Idle → Requesting → Live → (Capturing) → Live
                          └──────────────────→ Idle (on stop or error)

Camera acquisition tries an ordered list of constraint profiles, from the
preferred rear camera at 1920x1080 down to "any video", and stops at the first
one the device accepts. Only one session may hold a live stream per process;
starting a second session stops the first.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import cv2
from cv2.typing import MatLike

from .bitmap import Bitmap
from .errors import (
    Cancelled,
    CaptureError,
    InsecureContext,
    NotReady,
    Unsupported,
    UnsupportedConstraints,
    classify_capture_error,
)
from .transform import rotate_upright

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    LIVE = "live"
    CAPTURING = "capturing"


@dataclass(frozen=True)
class ConstraintProfile:
    """One set of stream constraints to try when opening the camera."""
    name: str
    width: int | None = None
    height: int | None = None
    facing_mode: str | None = None


PREFERRED_PROFILE = ConstraintProfile("preferred", width=1920, height=1080, facing_mode="environment")
MINIMAL_PROFILE = ConstraintProfile("minimal")
DEFAULT_PROFILES: tuple[ConstraintProfile, ...] = (PREFERRED_PROFILE, MINIMAL_PROFILE)


class DeviceAccessError(Exception):
    """Raised by video sources with the platform's error name."""

    def __init__(self, name: str, message: str = ""):
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class VideoStream(Protocol):
    """An open camera stream, as handed out by a VideoSource."""

    orientation: int

    def read_frame(self) -> MatLike | None:
        """Return the latest decodable BGR frame, or None if none yet."""
        ...

    def has_torch(self) -> bool:
        ...

    def set_torch(self, on: bool) -> None:
        ...

    def stop(self) -> None:
        """Release every underlying hardware track."""
        ...


class VideoSource(ABC):
    """Camera backend used by CaptureSession."""

    def is_secure_context(self) -> bool:
        """Whether the platform allows camera access at all."""
        return True

    @abstractmethod
    def open(self, profile: ConstraintProfile) -> VideoStream:
        """
        Open a stream satisfying the profile.

        Raises:
            DeviceAccessError: With the platform error name on failure
        """
        pass


# ============================================================================
# OpenCV backend
# ============================================================================

class OpenCVStream:
    """VideoStream over cv2.VideoCapture."""

    def __init__(self, capture: cv2.VideoCapture, orientation: int = 0):
        self._capture = capture
        self.orientation = orientation

    def read_frame(self) -> MatLike | None:
        ok, frame = self._capture.read()
        if not ok or frame is None:
            return None
        return frame

    def has_torch(self) -> bool:
        # OpenCV exposes no torch control
        return False

    def set_torch(self, on: bool) -> None:
        raise DeviceAccessError("NotSupportedError", "torch control is not available")

    def stop(self) -> None:
        self._capture.release()


class OpenCVVideoSource(VideoSource):
    """
    Camera source backed by OpenCV.

    OpenCV cannot choose a camera by facing mode, so `facing_mode` is ignored
    and `camera_index` selects the device.
    """

    def __init__(self, camera_index: int = 0, orientation: int = 0):
        self.camera_index = camera_index
        self.orientation = orientation

    def open(self, profile: ConstraintProfile) -> VideoStream:
        capture = cv2.VideoCapture(self.camera_index)
        if not capture.isOpened():
            capture.release()
            raise DeviceAccessError("NotFoundError", f"camera {self.camera_index} could not be opened")

        if profile.width is not None and profile.height is not None:
            accepted = (
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, profile.width)
                and capture.set(cv2.CAP_PROP_FRAME_HEIGHT, profile.height)
            )
            if not accepted:
                capture.release()
                raise DeviceAccessError(
                    "OverconstrainedError",
                    f"{profile.width}x{profile.height} not supported"
                )

        return OpenCVStream(capture, orientation=self.orientation)


# ============================================================================
# Session
# ============================================================================

# The one session currently holding a live stream
_active_session: "CaptureSession | None" = None


class CaptureSession:
    """
    Lifecycle of one live camera stream.

    Use as an async context manager to guarantee release:

        async with CaptureSession(source) as camera:
            frame = await camera.capture_frame()
    """

    def __init__(self,
                 source: VideoSource,
                 profiles: tuple[ConstraintProfile, ...] = DEFAULT_PROFILES):
        if not profiles:
            raise ValueError("At least one constraint profile is required")
        self.source = source
        self.profiles = profiles
        self.state = CaptureState.IDLE
        self.profile: ConstraintProfile | None = None
        self._stream: VideoStream | None = None
        self._torch_supported = False
        self._cancel_requested = False

    @property
    def torch_supported(self) -> bool:
        """Whether the live stream has a supplemental light."""
        return self._torch_supported

    @property
    def is_live(self) -> bool:
        return self.state in (CaptureState.LIVE, CaptureState.CAPTURING)

    async def start(self) -> None:
        """
        Acquire the camera and go Live.

        Raises:
            CaptureError: PermissionDenied, DeviceNotFound, DeviceBusy,
                UnsupportedConstraints, InsecureContext or Cancelled. The
                session is Idle and holds no stream afterwards.
        """
        global _active_session

        if self.is_live:
            return
        if self.state is CaptureState.REQUESTING:
            raise CaptureError("Camera request already in progress.")

        if _active_session is not None and _active_session is not self:
            logger.info("Stopping previous capture session before starting a new one")
            _active_session.stop()

        if not self.source.is_secure_context():
            raise InsecureContext()

        self.state = CaptureState.REQUESTING
        self._cancel_requested = False
        try:
            stream, profile = await self._open_first_supported()
        except BaseException:
            self.state = CaptureState.IDLE
            raise

        if self._cancel_requested:
            # stop() was called while we were waiting on the device
            self._release(stream)
            self.state = CaptureState.IDLE
            raise Cancelled()

        self._stream = stream
        self.profile = profile
        self._torch_supported = bool(stream.has_torch())
        self.state = CaptureState.LIVE
        _active_session = self
        logger.info("Camera live with %s profile (torch: %s)", profile.name, self._torch_supported)

    async def _open_first_supported(self) -> tuple[VideoStream, ConstraintProfile]:
        last_error: CaptureError = UnsupportedConstraints()
        for profile in self.profiles:
            opening = asyncio.ensure_future(asyncio.to_thread(self.source.open, profile))
            try:
                stream = await asyncio.shield(opening)
                return stream, profile
            except asyncio.CancelledError:
                # The worker thread may still hand back a stream
                opening.add_done_callback(self._release_late_stream)
                raise
            except DeviceAccessError as e:
                error = classify_capture_error(e.name, e.message or None)
            except CaptureError:
                raise
            except Exception as e:
                logger.error("Camera source failed: %s", e)
                raise CaptureError(f"Could not access camera: {e}") from e
            if not isinstance(error, UnsupportedConstraints):
                raise error
            logger.info("Camera rejected %s profile, trying next", profile.name)
            last_error = error
        raise last_error

    async def capture_frame(self) -> Bitmap:
        """
        Grab the current frame as an upright bitmap.

        Raises:
            NotReady: If the session is not Live or no frame is decodable yet
        """
        if self.state is not CaptureState.LIVE or self._stream is None:
            raise NotReady()

        stream = self._stream
        self.state = CaptureState.CAPTURING
        try:
            frame = await asyncio.to_thread(stream.read_frame)
        finally:
            if self.state is CaptureState.CAPTURING:
                self.state = CaptureState.LIVE

        if frame is None:
            raise NotReady()

        return rotate_upright(Bitmap.from_bgr(frame), stream.orientation)

    def toggle_light(self, on: bool) -> None:
        """
        Switch the supplemental light.

        Raises:
            NotReady: If the session is not Live
            Unsupported: If the stream has no torch
        """
        if not self.is_live or self._stream is None:
            raise NotReady()
        if not self._torch_supported:
            raise Unsupported()
        self._stream.set_torch(on)

    def stop(self) -> None:
        """
        Release the stream. Safe to call any number of times, from any state.
        """
        global _active_session

        if self.state is CaptureState.REQUESTING:
            self._cancel_requested = True

        stream, self._stream = self._stream, None
        if stream is not None:
            self._release(stream)
        if self.state is not CaptureState.REQUESTING:
            self.state = CaptureState.IDLE
        self._torch_supported = False
        if _active_session is self:
            _active_session = None

    @classmethod
    def _release_late_stream(cls, opening: "asyncio.Future[VideoStream]") -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.info("Releasing camera stream opened after cancellation")
        cls._release(opening.result())

    @staticmethod
    def _release(stream: VideoStream) -> None:
        try:
            stream.stop()
        except Exception:
            logger.warning("Error while releasing camera stream", exc_info=True)

    async def __aenter__(self) -> "CaptureSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()
