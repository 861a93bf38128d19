"""
Pixel-level image transforms: crop, color filters and orientation fix-up.

All functions are pure. They take a Bitmap and return a new Bitmap; the
input is never modified.
"""

from enum import Enum

import cv2
import numpy as np
from numpy.typing import NDArray

from .bitmap import Bitmap, CropRegion, Size
from .errors import InvalidRegion

# Luma weights in per-mille so the comparison against the threshold is exact
LUMA_WEIGHTS_X1000: tuple[int, int, int] = (299, 587, 114)
BW_THRESHOLD = 128

ENHANCE_BRIGHTNESS = 1.2
ENHANCE_CONTRAST = 1.3


class FilterKind(str, Enum):
    """The three fixed color filters plus identity."""
    ORIGINAL = "original"
    GRAYSCALE = "grayscale"
    BLACK_AND_WHITE = "bw"
    ENHANCED = "enhanced"


# ============================================================================
# Crop
# ============================================================================

def scale_display_region(region: CropRegion, display_size: Size, natural_size: Size) -> CropRegion:
    """
    Convert a rectangle drawn on a scaled preview into native pixel space.

    Args:
        region: Rectangle in display coordinates
        display_size: Size of the preview the rectangle was drawn on
        natural_size: Native size of the bitmap

    Returns:
        Rectangle in native pixel coordinates (not yet clamped)
    """
    if display_size.width <= 0 or display_size.height <= 0:
        raise InvalidRegion(f"Display size must be positive, got {display_size}")

    scale_x = natural_size.width / display_size.width
    scale_y = natural_size.height / display_size.height
    return CropRegion(
        x=region.x * scale_x,
        y=region.y * scale_y,
        width=region.width * scale_x,
        height=region.height * scale_y,
    )


def clamp_region(region: CropRegion, width: int, height: int) -> tuple[int, int, int, int]:
    """
    Round a region to whole pixels and clamp it to the bitmap bounds.

    Returns:
        Tuple of (x, y, width, height); width/height may be <= 0 when the
        region lies entirely outside the bitmap
    """
    x0 = max(0, int(round(region.x)))
    y0 = max(0, int(round(region.y)))
    x1 = min(width, int(round(region.x + region.width)))
    y1 = min(height, int(round(region.y + region.height)))
    return x0, y0, x1 - x0, y1 - y0


def crop(bitmap: Bitmap, region: CropRegion) -> Bitmap:
    """
    Copy a rectangle of the bitmap into a new bitmap.

    Out-of-range regions are clamped to the bitmap, not rejected.

    Args:
        bitmap: Source bitmap
        region: Rectangle in native pixel coordinates

    Returns:
        New bitmap of size region.width x region.height (after clamping)

    Raises:
        InvalidRegion: If the clamped region has no area
    """
    x, y, w, h = clamp_region(region, bitmap.width, bitmap.height)
    if w <= 0 or h <= 0:
        raise InvalidRegion(
            f"Crop region {region} is empty within {bitmap.width}x{bitmap.height} bitmap"
        )
    return Bitmap(bitmap.pixels[y:y + h, x:x + w].copy())


# ============================================================================
# Filters
# ============================================================================

def luma_x1000(bitmap: Bitmap) -> NDArray[np.int32]:
    """Per-pixel luma times 1000, computed exactly in integers."""
    rgb = bitmap.pixels[..., :3].astype(np.int32)
    wr, wg, wb = LUMA_WEIGHTS_X1000
    return rgb[..., 0] * wr + rgb[..., 1] * wg + rgb[..., 2] * wb


def _with_gray_channels(bitmap: Bitmap, values: NDArray[np.floating] | NDArray[np.integer]) -> Bitmap:
    """Write one value per pixel into R, G and B; alpha is kept."""
    gray = np.clip(np.rint(values), 0, 255).astype(np.uint8)
    pixels = bitmap.pixels.copy()
    pixels[..., 0] = gray
    pixels[..., 1] = gray
    pixels[..., 2] = gray
    return Bitmap(pixels)


def grayscale(bitmap: Bitmap) -> Bitmap:
    """Set R=G=B to luma = 0.299R + 0.587G + 0.114B."""
    return _with_gray_channels(bitmap, luma_x1000(bitmap) / 1000.0)


def black_and_white(bitmap: Bitmap, threshold: int = BW_THRESHOLD) -> Bitmap:
    """
    Hard threshold on luma, no dithering.

    A pixel becomes white only when luma is strictly greater than the
    threshold; luma equal to the threshold becomes black.
    """
    white = luma_x1000(bitmap) > threshold * 1000
    return _with_gray_channels(bitmap, np.where(white, 255, 0))


def contrast_factor(contrast: float = ENHANCE_CONTRAST) -> float:
    """factor = 259(255c + 255) / (255(259 - 255c))"""
    return (259 * (contrast * 255 + 255)) / (255 * (259 - contrast * 255))


def enhance(bitmap: Bitmap,
            brightness: float = ENHANCE_BRIGHTNESS,
            contrast: float = ENHANCE_CONTRAST) -> Bitmap:
    """
    Contrast-stretched, brightened grayscale.

    The contrast factor is applied to luma around 128, the result is scaled
    by the brightness multiplier and clamped to [0, 255]. The output is gray
    on all three channels; it does not preserve color.

    Note: with the default contrast of 1.3 the factor is negative (about
    -8.2), so mid-tones are inverted and pushed to black or white.
    """
    factor = contrast_factor(contrast)
    luma = luma_x1000(bitmap) / 1000.0
    enhanced = ((factor * (luma - 128)) + 128) * brightness
    return _with_gray_channels(bitmap, enhanced)


def apply_filter(bitmap: Bitmap, kind: FilterKind | str) -> Bitmap:
    """
    Apply one of the fixed filters.

    Args:
        bitmap: Source bitmap
        kind: FilterKind or its string value:
            - "original": identity
            - "grayscale": luma on all channels
            - "bw": hard black/white threshold at luma 128
            - "enhanced": brightness/contrast boosted grayscale

    Returns:
        Filtered bitmap (the same object for "original")

    Raises:
        ValueError: If the filter kind is unknown
    """
    kind = FilterKind(kind)
    if kind is FilterKind.ORIGINAL:
        return bitmap
    elif kind is FilterKind.GRAYSCALE:
        return grayscale(bitmap)
    elif kind is FilterKind.BLACK_AND_WHITE:
        return black_and_white(bitmap)
    else:
        return enhance(bitmap)


# ============================================================================
# Orientation
# ============================================================================

def rotate_upright(bitmap: Bitmap, orientation: int) -> Bitmap:
    """
    Rotate a captured frame so it is upright.

    Args:
        bitmap: Captured frame
        orientation: Sensor orientation in degrees clockwise (0, 90, 180, 270)

    Returns:
        Rotated bitmap for 90/270; the input unchanged for 0/180
    """
    orientation = orientation % 360
    if orientation == 90:
        return Bitmap(np.ascontiguousarray(cv2.rotate(bitmap.pixels, cv2.ROTATE_90_COUNTERCLOCKWISE)))
    elif orientation == 270:
        return Bitmap(np.ascontiguousarray(cv2.rotate(bitmap.pixels, cv2.ROTATE_90_CLOCKWISE)))
    elif orientation in (0, 180):
        return bitmap
    else:
        raise ValueError(f"Unsupported orientation: {orientation}")
