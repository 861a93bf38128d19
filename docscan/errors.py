"""
Error taxonomy for the scanning pipeline.

Capture errors are never fatal to a session and carry a corrective suggestion
for the user. Recognition errors leave session state untouched so the user can
retry. Validation errors block an export until the missing input is supplied.
"""


class DocScanError(Exception):
    """Base class for every error raised by docscan."""


# ============================================================================
# Capture
# ============================================================================

class CaptureError(DocScanError):
    """Base class for camera acquisition and capture failures."""

    suggestion: str = "Please upload a file instead."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return "Could not access camera."

    @property
    def user_message(self) -> str:
        """Message plus corrective suggestion, ready to show to a user."""
        return f"{self} {self.suggestion}"


class PermissionDenied(CaptureError):
    suggestion = "Allow camera access in your system settings, or upload a file instead."

    @classmethod
    def default_message(cls) -> str:
        return "Camera permission was denied."


class DeviceNotFound(CaptureError):
    suggestion = "Connect a camera, or upload a file instead."

    @classmethod
    def default_message(cls) -> str:
        return "No camera device was found."


class DeviceBusy(CaptureError):
    suggestion = "Close other applications using the camera, or upload a file instead."

    @classmethod
    def default_message(cls) -> str:
        return "The camera is already in use."


class UnsupportedConstraints(CaptureError):
    @classmethod
    def default_message(cls) -> str:
        return "The camera does not support any of the requested settings."


class InsecureContext(CaptureError):
    suggestion = "Open the scanner over a secure connection, or upload a file instead."

    @classmethod
    def default_message(cls) -> str:
        return "Camera access requires a secure context."


class Cancelled(CaptureError):
    suggestion = "Start the camera again when ready."

    @classmethod
    def default_message(cls) -> str:
        return "Camera request was cancelled."


class NotReady(CaptureError):
    suggestion = "Wait for the preview to appear, then capture again."

    @classmethod
    def default_message(cls) -> str:
        return "The camera has not produced a frame yet."


class Unsupported(CaptureError):
    suggestion = "This camera has no flash or torch."

    @classmethod
    def default_message(cls) -> str:
        return "Capability not supported by this camera."


# Platform error names → taxonomy. Names follow the media-device error names
# that camera backends report.
_CAPTURE_ERROR_NAMES: dict[str, type[CaptureError]] = {
    "NotAllowedError": PermissionDenied,
    "PermissionDeniedError": PermissionDenied,
    "NotFoundError": DeviceNotFound,
    "DevicesNotFoundError": DeviceNotFound,
    "NotReadableError": DeviceBusy,
    "TrackStartError": DeviceBusy,
    "OverconstrainedError": UnsupportedConstraints,
    "ConstraintNotSatisfiedError": UnsupportedConstraints,
    "SecurityError": InsecureContext,
    "AbortError": Cancelled,
}


def classify_capture_error(name: str, message: str | None = None) -> CaptureError:
    """
    Map a platform device-error name onto the capture error taxonomy.

    Args:
        name: Error name reported by the camera backend (e.g. "NotAllowedError")
        message: Optional backend message to keep in the error

    Returns:
        A CaptureError instance (generic CaptureError for unknown names)
    """
    error_cls = _CAPTURE_ERROR_NAMES.get(name, CaptureError)
    return error_cls(message)


# ============================================================================
# Image transforms
# ============================================================================

class InvalidRegion(DocScanError):
    """Crop region is empty after clamping to the bitmap bounds."""


# ============================================================================
# OCR and enhancement
# ============================================================================

class RecognitionFailed(DocScanError):
    """OCR failed hard. Wraps the underlying error as `reason`."""

    def __init__(self, reason: str):
        super().__init__(f"OCR processing failed: {reason}")
        self.reason = reason


class OCRUnavailable(DocScanError):
    """No OCR engine can run in this environment."""

    def __init__(self, message: str = "OCR is not available. Install Tesseract or configure Mistral OCR."):
        super().__init__(message)


class EngineBusy(DocScanError):
    """A recognition is already in flight on the shared worker."""

    def __init__(self, message: str = "OCR engine is busy with another image."):
        super().__init__(message)


class RateLimited(DocScanError):
    """Too many enhancement requests from one client."""

    def __init__(self, reset_after: int):
        super().__init__(f"Rate limit exceeded. Please try again in {reset_after} seconds")
        self.reset_after = reset_after


# ============================================================================
# Validation
# ============================================================================

class ValidationError(DocScanError):
    """Export or transition blocked by missing or invalid input."""


class IncompleteCard(ValidationError):
    def __init__(self, message: str = "Please capture both front and back of the ID card"):
        super().__init__(message)


class EmptyExport(ValidationError):
    def __init__(self, message: str = "Nothing to export. Please scan a document first."):
        super().__init__(message)


class InvalidTransition(ValidationError):
    """Event not allowed in the current session state."""
