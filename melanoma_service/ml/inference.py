from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import torch

from melanoma_service.core.errors import InferenceError
from melanoma_service.ml.model_defs import LesionClassifier


@dataclass(frozen=True)
class PredictionResult:
    label: str
    class_index: int
    probability: float
    confidence: str
    probabilities: Dict[str, float]


@torch.no_grad()
def run_inference(
    model: LesionClassifier,
    x: torch.Tensor,
    img_size: int,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Forward pass.
    Returns (logits [1, n_outputs], feature map [1, C, h, w])
    """
    expected = (1, 3, img_size, img_size)
    if tuple(x.shape) != expected:
        raise InferenceError(f"Input shape {tuple(x.shape)} does not match model input {expected}")

    feats = model.features(x)
    logits = model.head(feats)
    return logits, feats


def logits_to_probs(logits: torch.Tensor, n_classes: int) -> torch.Tensor:
    """
    Converts logits -> per-class probabilities [n_classes].
    A single logit with two classes is read as P(class 1) (sigmoid).
    """
    if logits.ndim != 2 or logits.shape[0] != 1:
        raise InferenceError(f"Unexpected output shape {tuple(logits.shape)}")

    n_outputs = logits.shape[1]
    if n_outputs == 1 and n_classes == 2:
        p1 = torch.sigmoid(logits[0, 0])
        return torch.stack([1 - p1, p1])
    if n_outputs != n_classes:
        raise InferenceError(f"Model has {n_outputs} outputs but {n_classes} known classes")
    return torch.softmax(logits[0], dim=0)


def to_prediction(
    logits: torch.Tensor,
    class_names: Sequence[str],
    decimals: int = 4,
) -> PredictionResult:
    if not torch.isfinite(logits).all():
        raise InferenceError("Model output contains NaN or Inf")

    probs = logits_to_probs(logits.detach().float().cpu(), len(class_names))
    if not torch.isfinite(probs).all():
        raise InferenceError("Probabilities contain NaN or Inf")

    idx = int(torch.argmax(probs).item())
    probability = min(max(float(probs[idx].item()), 0.0), 1.0)

    return PredictionResult(
        label=class_names[idx],
        class_index=idx,
        probability=probability,
        confidence=f"{probability:.{decimals}f}",
        probabilities={name: float(p) for name, p in zip(class_names, probs.tolist())},
    )
