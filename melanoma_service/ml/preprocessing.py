import numpy as np
import torch
import cv2

from melanoma_service.core.errors import PreprocessError
from melanoma_service.ml.decoding import ImageBuffer

IMAGENET_MEAN = torch.tensor([0.485, 0.456, 0.406]).view(3, 1, 1)
IMAGENET_STD = torch.tensor([0.229, 0.224, 0.225]).view(3, 1, 1)


def preprocess_image(buffer: ImageBuffer, img_size: int) -> torch.Tensor:
    """
    Input:
      buffer: ImageBuffer holding uint8 RGB pixels [H,W,3]
    Output:
      torch.Tensor [1,3,img_size,img_size] normalized

    Resize policy is a plain stretch to img_size x img_size (INTER_AREA),
    matching the training-time transforms. Aspect ratio is not preserved.
    """
    img_rgb = buffer.pixels
    if img_rgb.ndim != 3 or img_rgb.shape[2] != 3:
        raise PreprocessError(f"Expected an RGB buffer, got shape {img_rgb.shape}")
    if img_rgb.shape[0] == 0 or img_rgb.shape[1] == 0:
        raise PreprocessError("Image has zero area")
    if img_size <= 0:
        raise PreprocessError(f"Invalid model input size: {img_size}")

    img = cv2.resize(img_rgb, (img_size, img_size), interpolation=cv2.INTER_AREA)
    x = img.astype(np.float32) / 255.0
    x = torch.from_numpy(x).permute(2, 0, 1)
    x = (x - IMAGENET_MEAN) / IMAGENET_STD
    return x.unsqueeze(0).contiguous()
