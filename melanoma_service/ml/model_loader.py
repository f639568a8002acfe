import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import torch
from safetensors.torch import load_file
from torch import nn

from melanoma_service.core.config import Settings, settings as default_settings
from melanoma_service.ml.labels import load_class_names, validate_class_names
from melanoma_service.ml.model_defs import LesionClassifier, build_classifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelBundle:
    """
    Read-only handle on the loaded classifier.
    Created once at app startup and shared by every request.
    """

    model: LesionClassifier
    class_names: Tuple[str, ...]
    device: torch.device
    img_size: int

    @property
    def num_outputs(self) -> int:
        return self.model.head.fc.out_features


def freeze_model(model: nn.Module) -> nn.Module:
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model


def _read_checkpoint(path: Path) -> Tuple[Dict[str, torch.Tensor], Dict]:
    """Returns (state_dict, metadata)."""
    if path.suffix == ".safetensors":
        return load_file(str(path)), {}

    ckpt = torch.load(path, map_location="cpu")
    if isinstance(ckpt, dict) and "state_dict" in ckpt:
        meta = {k: ckpt[k] for k in ("arch", "class_names") if k in ckpt}
        return ckpt["state_dict"], meta
    return ckpt, {}


def _check_feature_map(bundle: ModelBundle) -> None:
    x = torch.zeros(1, 3, bundle.img_size, bundle.img_size, device=bundle.device)
    with torch.no_grad():
        feats = bundle.model.features(x)
    if feats.ndim != 4:
        raise ValueError(
            f"Backbone must return a spatial feature map [B,C,H,W], got {tuple(feats.shape)}"
        )


def build_bundle(
    model: LesionClassifier,
    class_names,
    device: torch.device,
    img_size: int,
) -> ModelBundle:
    class_names = validate_class_names(list(class_names))
    num_outputs = model.head.fc.out_features
    binary_single_logit = num_outputs == 1 and len(class_names) == 2
    if num_outputs != len(class_names) and not binary_single_logit:
        raise ValueError(
            f"Model has {num_outputs} outputs but {len(class_names)} class names"
        )

    model = freeze_model(model.to(device))
    bundle = ModelBundle(
        model=model,
        class_names=tuple(class_names),
        device=device,
        img_size=img_size,
    )
    _check_feature_map(bundle)
    return bundle


def load_models(settings: Optional[Settings] = None) -> ModelBundle:
    settings = settings or default_settings
    device = settings.device_torch
    logger.info(f"Loading models on device: {device}")

    logger.info(f"Loading classifier weights: {settings.model_path}")
    state_dict, meta = _read_checkpoint(settings.model_path)

    arch = meta.get("arch", settings.model_arch)
    class_names = meta.get("class_names") or load_class_names(settings.classes_path)

    if "head.fc.weight" not in state_dict:
        raise ValueError(f"Checkpoint {settings.model_path} has no classifier head weights")
    num_outputs = state_dict["head.fc.weight"].shape[0]
    logger.info(f"Building {arch} with {num_outputs} outputs for classes {class_names}")
    model = build_classifier(arch, num_outputs)
    model.load_state_dict(state_dict, strict=True)

    bundle = build_bundle(model, class_names, device, settings.img_size)
    logger.info("Models loaded successfully")
    return bundle
