import io
import logging
import warnings
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from melanoma_service.core.errors import (
    DecodeError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
)

logger = logging.getLogger(__name__)

# MPO is a JPEG with a multi-picture marker (many phone cameras); the first frame is used
SUPPORTED_FORMATS = {"JPEG", "MPO", "PNG", "WEBP"}

# Pillow modes that convert losslessly enough to RGB
RGB_CONVERTIBLE_MODES = {"1", "L", "P", "RGB", "RGBA", "LA"}

# 16-bit grayscale (PNG), scaled down to 8-bit before RGB conversion
HIGH_DEPTH_GRAY_MODES = {"I;16", "I;16B", "I;16L", "I"}


@dataclass(frozen=True)
class ImageBuffer:
    """Decoded upload: read-only uint8 RGB pixels [H,W,3]."""

    pixels: np.ndarray

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2]) if self.pixels.ndim == 3 else 1

    @property
    def size(self) -> tuple:
        return self.width, self.height


def _to_8bit_gray(img: Image.Image) -> Image.Image:
    gray16 = np.clip(np.array(img).astype(np.int64), 0, 65535)
    return Image.fromarray((gray16 >> 8).astype(np.uint8))


def _normalize_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower()


def decode_image(
    raw: bytes,
    content_type: Optional[str] = None,
    allowed_content_types: Optional[Iterable[str]] = None,
    max_bytes: Optional[int] = None,
    max_pixels: Optional[int] = None,
) -> ImageBuffer:
    """
    Input:
      raw: uploaded bytes
      content_type: declared MIME type of the upload (may be None)
    Output:
      ImageBuffer with RGB pixels, EXIF orientation applied
    """
    if not raw:
        raise DecodeError("Empty file")

    if max_bytes is not None and len(raw) > max_bytes:
        raise PayloadTooLargeError(f"Upload exceeds {max_bytes} bytes")

    declared = _normalize_content_type(content_type)
    if declared is not None and allowed_content_types is not None:
        if declared not in {c.lower() for c in allowed_content_types}:
            raise UnsupportedMediaTypeError("Unsupported image type")

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            img = Image.open(io.BytesIO(raw))
            fmt = img.format
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise DecodeError(f"Image too large ({width}x{height})")
            # Force a full decode so truncated files fail here
            img.load()
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, EOFError,
            Image.DecompressionBombError, Image.DecompressionBombWarning):
        raise DecodeError("Could not decode image")

    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedMediaTypeError(f"Unsupported image format: {fmt}")

    if width == 0 or height == 0:
        raise DecodeError("Image has zero width or height")

    if img.mode not in RGB_CONVERTIBLE_MODES and img.mode not in HIGH_DEPTH_GRAY_MODES:
        raise DecodeError(f"Unsupported channel layout: {img.mode}")

    img = ImageOps.exif_transpose(img)
    if img.mode in HIGH_DEPTH_GRAY_MODES:
        img = _to_8bit_gray(img)
    if img.mode != "RGB":
        img = img.convert("RGB")

    pixels = np.array(img, dtype=np.uint8)
    pixels.setflags(write=False)

    logger.debug(f"Decoded {fmt} image {img.width}x{img.height} (mode {img.mode})")
    return ImageBuffer(pixels=pixels)
