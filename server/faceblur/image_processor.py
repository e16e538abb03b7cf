"""
Image Processing Module

Two jobs around the detection call:
- the read probe: decode an element's bytes and read a pixel, refusing
  cross-origin or corrupt images before any detection work is spent;
- rendering: produce the obscured bytes of a suppressed image
  (Gaussian blur, pixelation or black bar over the whole image).
"""

import io
from typing import Tuple

import numpy as np
import pillow_heif
from PIL import Image, ImageDraw, ImageFilter

from faceblur.config import CensorMethod
from faceblur.errors import UnreadableImageError

# HEIF/HEIC support for PIL (Apple photos)
pillow_heif.register_heif_opener()


# ============================================================================
# Read probe
# ============================================================================

def read_pixels(element) -> np.ndarray:
    """
    Decode an image element into an RGB array for the detector.

    Raises:
        UnreadableImageError: cross-origin element, missing data, or
            bytes that fail to decode.
    """
    if element.cross_origin:
        raise UnreadableImageError(f"{element.node_id}: cross-origin pixels are not readable")
    if not element.data:
        raise UnreadableImageError(f"{element.node_id}: no image data")

    try:
        return decode_image(element.data)
    except Exception as e:
        raise UnreadableImageError(f"{element.node_id}: decode failed: {e}") from e


def decode_image(image_bytes: bytes) -> np.ndarray:
    """Fully decode image bytes to an RGB uint8 array, probing one pixel."""
    img = Image.open(io.BytesIO(image_bytes))
    img.load()
    img.getpixel((0, 0))
    if img.mode != "RGB":
        img = img.convert("RGB")
    return np.asarray(img)


def get_image_dimensions(image_bytes: bytes) -> Tuple[int, int]:
    """Get width and height of an image (header only, no full decode)."""
    img = Image.open(io.BytesIO(image_bytes))
    return img.size


# ============================================================================
# Rendering
# ============================================================================

class ImageProcessor:
    """
    Renders the suppressed form of an image.

    The element's own bytes are never modified; rendering produces a copy.
    """

    def __init__(self, method: CensorMethod = CensorMethod.GAUSSIAN_BLUR, blur_radius: int = 20):
        self.method = method
        self.blur_radius = blur_radius
        self.pixel_size = 10

    def render(self, image_bytes: bytes, obscured: bool) -> Tuple[bytes, str]:
        """
        Return (image_bytes, format), obscured if requested.

        Unobscured images are returned as-is.
        """
        img = Image.open(io.BytesIO(image_bytes))
        original_format = (img.format or "PNG").upper()
        if not obscured:
            return image_bytes, original_format.lower()

        if img.mode in ("RGBA", "P"):
            img = img.convert("RGB")

        if self.method == CensorMethod.GAUSSIAN_BLUR:
            img = img.filter(ImageFilter.GaussianBlur(radius=self.blur_radius))
        elif self.method == CensorMethod.PIXELATE:
            img = self._pixelate(img)
        elif self.method == CensorMethod.BLACK_BAR:
            ImageDraw.Draw(img).rectangle([0, 0, img.width, img.height], fill="black")

        output_buffer = io.BytesIO()
        save_format = "JPEG" if original_format in ("JPEG", "JPG") else "PNG"
        img.save(output_buffer, format=save_format, quality=95)
        return output_buffer.getvalue(), save_format.lower()

    def _pixelate(self, img: Image.Image) -> Image.Image:
        small_size = (
            max(1, img.width // self.pixel_size),
            max(1, img.height // self.pixel_size)
        )
        small = img.resize(small_size, Image.Resampling.NEAREST)
        return small.resize(img.size, Image.Resampling.NEAREST)
