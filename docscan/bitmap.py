"""
In-memory bitmap and geometry types shared by every pipeline stage.

A Bitmap is a decoded RGBA pixel grid. It is immutable: transforms always
return a new Bitmap. Compressed encodings (JPEG) exist only at the edges of
the pipeline, when a bitmap is persisted or handed to OCR or PDF export.
"""

import os
from dataclasses import dataclass

import cv2
import numpy as np
from cv2.typing import MatLike
from numpy.typing import NDArray

DEFAULT_JPEG_QUALITY = 0.9


@dataclass(frozen=True)
class Size:
    """Width/height pair in pixels."""
    width: float
    height: float


@dataclass(frozen=True)
class CropRegion:
    """
    Axis-aligned rectangle in a bitmap's native pixel space.

    Display-space rectangles must be converted with
    `transform.scale_display_region` before cropping.
    """
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True, eq=False)
class Bitmap:
    """Decoded RGBA image, shape (height, width, 4), dtype uint8."""
    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        pixels = np.asarray(self.pixels)
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Bitmap pixels must have shape (h, w, 4), got {pixels.shape}")
        if pixels.dtype != np.uint8:
            raise ValueError(f"Bitmap pixels must be uint8, got {pixels.dtype}")
        # Read-only view; the bitmap never changes after construction
        view = pixels.view()
        view.flags.writeable = False
        object.__setattr__(self, "pixels", view)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitmap):
            return NotImplemented
        return np.array_equal(self.pixels, other.pixels)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Bitmap({self.width}x{self.height})"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def blank(cls, width: int, height: int, color: tuple[int, int, int] = (255, 255, 255)) -> "Bitmap":
        """Create an opaque bitmap filled with one RGB color."""
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[..., :3] = color
        pixels[..., 3] = 255
        return cls(pixels)

    @classmethod
    def from_bgr(cls, image: MatLike) -> "Bitmap":
        """
        Build a bitmap from an OpenCV image.

        Args:
            image: Grayscale, BGR or BGRA image as returned by OpenCV

        Returns:
            Opaque RGBA bitmap
        """
        if len(image.shape) == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        elif image.shape[2] == 3:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
        elif image.shape[2] == 4:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
        else:
            raise ValueError(f"Unsupported image shape: {image.shape}")
        return cls(np.asarray(rgba, dtype=np.uint8))

    def to_bgr(self) -> NDArray[np.uint8]:
        """Convert to a 3-channel BGR image for OpenCV consumers."""
        return np.asarray(cv2.cvtColor(self.pixels, cv2.COLOR_RGBA2BGR), dtype=np.uint8)

    def to_rgb(self) -> NDArray[np.uint8]:
        """Drop alpha, keeping RGB order (PIL and PDF consumers)."""
        return np.ascontiguousarray(self.pixels[..., :3])

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode_jpeg(self, quality: float = DEFAULT_JPEG_QUALITY) -> bytes:
        """
        Encode as a lossy JPEG byte stream.

        Args:
            quality: Quality in (0, 1], 0.9 by default

        Returns:
            JPEG bytes
        """
        params = [cv2.IMWRITE_JPEG_QUALITY, int(round(quality * 100))]
        ok, buffer = cv2.imencode(".jpg", self.to_bgr(), params)
        if not ok:
            raise ValueError("JPEG encoding failed")
        return buffer.tobytes()

    @classmethod
    def decode(cls, data: bytes) -> "Bitmap":
        """
        Decode a compressed image buffer (JPEG, PNG, ...).

        Raises:
            ValueError: If the buffer is not a decodable image
        """
        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED) if buffer.size else None
        if image is None:
            raise ValueError("Invalid image format or corrupted data")
        return cls.from_bgr(image)

    @classmethod
    def load(cls, image_path: str) -> "Bitmap":
        """
        Load and fully decode an image file.

        Raises:
            FileNotFoundError: If the image file doesn't exist
            ValueError: If the file exists but isn't a valid image format
        """
        if not os.path.exists(image_path):
            raise FileNotFoundError(f"Image file not found: {image_path}")

        image = cv2.imread(image_path, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise ValueError(f"Invalid image format or corrupted file: {image_path}")

        return cls.from_bgr(image)
