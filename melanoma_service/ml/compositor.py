import base64
import io
from dataclasses import dataclass

import numpy as np
import cv2
from PIL import Image

from melanoma_service.core.errors import CompositeError
from melanoma_service.ml.decoding import ImageBuffer
from melanoma_service.ml.gradcam import RelevanceMap

COLORMAPS = {
    "jet": cv2.COLORMAP_JET,
    "turbo": cv2.COLORMAP_TURBO,
    "inferno": cv2.COLORMAP_INFERNO,
    "magma": cv2.COLORMAP_MAGMA,
    "plasma": cv2.COLORMAP_PLASMA,
    "viridis": cv2.COLORMAP_VIRIDIS,
    "hot": cv2.COLORMAP_HOT,
}

MEDIA_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png"}


@dataclass(frozen=True)
class CompositeImage:
    data: bytes
    image_format: str
    width: int
    height: int

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.image_format]

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")


def colorize(relevance: np.ndarray, colormap: str = "jet") -> np.ndarray:
    """Relevance [H,W] in [0,1] -> RGB uint8 heatmap [H,W,3]."""
    cmap = COLORMAPS.get(colormap.lower())
    if cmap is None:
        raise CompositeError(f"Unknown colormap: {colormap}")
    heat = np.rint(np.clip(relevance, 0.0, 1.0) * 255).astype(np.uint8)
    heat = cv2.applyColorMap(heat, cmap)
    return cv2.cvtColor(heat, cv2.COLOR_BGR2RGB)


def overlay_relevance(
    img_rgb: np.ndarray,
    relevance: np.ndarray,
    alpha: float = 0.45,
    colormap: str = "jet",
) -> np.ndarray:
    """
    out = (1 - alpha*r) * img + alpha*r * colormap(r), per pixel.
    """
    if img_rgb.shape[:2] != relevance.shape[:2]:
        raise CompositeError(
            f"Relevance map {relevance.shape[:2]} does not match image {img_rgb.shape[:2]}"
        )
    if not 0.0 <= alpha <= 1.0:
        raise CompositeError(f"Blend strength must be in [0,1], got {alpha}")

    heat = colorize(relevance, colormap).astype(np.float32)
    a = (alpha * np.clip(relevance, 0.0, 1.0)).astype(np.float32)[..., None]
    out = (1 - a) * img_rgb.astype(np.float32) + a * heat
    return np.rint(out).clip(0, 255).astype(np.uint8)


def encode_image(img_rgb: np.ndarray, image_format: str = "JPEG", quality: int = 90) -> bytes:
    image_format = image_format.upper()
    if image_format not in MEDIA_TYPES:
        raise CompositeError(f"Unsupported output format: {image_format}")

    buf = io.BytesIO()
    if image_format == "JPEG":
        Image.fromarray(img_rgb).save(buf, format="JPEG", quality=quality)
    else:
        Image.fromarray(img_rgb).save(buf, format="PNG")
    return buf.getvalue()


def composite(
    buffer: ImageBuffer,
    relevance: RelevanceMap,
    alpha: float = 0.45,
    colormap: str = "jet",
    image_format: str = "JPEG",
    quality: int = 90,
) -> CompositeImage:
    overlay = overlay_relevance(buffer.pixels, relevance.values, alpha=alpha, colormap=colormap)
    data = encode_image(overlay, image_format=image_format, quality=quality)
    return CompositeImage(
        data=data,
        image_format=image_format.upper(),
        width=buffer.width,
        height=buffer.height,
    )
