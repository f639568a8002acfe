import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import torch
import torch.nn.functional as F
import cv2
from torch import nn

from melanoma_service.core.errors import ExplanationError

logger = logging.getLogger(__name__)

EPS = 1e-8


@dataclass(frozen=True)
class RelevanceMap:
    """Per-pixel relevance in [0,1], shape [H,W] of the original image."""

    values: np.ndarray
    degraded: bool = False

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape[0], self.values.shape[1]


def class_score(logits: torch.Tensor, class_index: int) -> torch.Tensor:
    # Single-logit binary head: class 0 is the negative logit
    if logits.shape[1] == 1:
        return logits[0, 0] if class_index == 1 else -logits[0, 0]
    return logits[0, class_index]


def compute_gradcam(
    head: nn.Module,
    features: torch.Tensor,
    class_index: int,
    out_size: Tuple[int, int],
) -> RelevanceMap:
    """
    Grad-CAM on the backbone's last feature map.

    features: [1,C,h,w] from the inference pass
    out_size: (width, height) of the original image
    Returns a RelevanceMap in [0,1] resized to out_size.

    Gradients are taken w.r.t. a detached copy of the features, so the
    shared model's parameters and .grad fields are never touched.
    """
    fused = features.detach().clone().requires_grad_(True)

    with torch.enable_grad():
        logits = head(fused)
        score = class_score(logits, class_index)
        (grads,) = torch.autograd.grad(score, fused)

    weights = grads.mean(dim=(2, 3), keepdim=True)   # [1,C,1,1]
    cam = (weights * fused.detach()).sum(dim=1)[0]    # [h,w]
    cam = F.relu(cam)

    cam = cam.float().cpu().numpy()
    if not np.isfinite(cam).all():
        raise ExplanationError("Relevance map contains NaN or Inf")

    width, height = out_size
    span = float(cam.max() - cam.min())
    if span <= EPS:
        logger.warning("Grad-CAM map is flat, returning a degraded (all-zero) relevance map")
        return RelevanceMap(values=np.zeros((height, width), dtype=np.float32), degraded=True)

    cam = (cam - cam.min()) / span
    cam = cv2.resize(cam.astype(np.float32), (width, height), interpolation=cv2.INTER_LINEAR)
    cam = np.clip(cam, 0.0, 1.0)

    if not np.isfinite(cam).all():
        raise ExplanationError("Upsampled relevance map contains NaN or Inf")
    return RelevanceMap(values=cam.astype(np.float32), degraded=False)
