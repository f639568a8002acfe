import io

import numpy as np
import pytest
import torch
from torch import nn
from PIL import Image
from fastapi.testclient import TestClient

from melanoma_service.core.config import Settings
from melanoma_service.main import create_app
from melanoma_service.ml.model_defs import LesionClassifier, build_classifier
from melanoma_service.ml.model_loader import build_bundle
from melanoma_service.services.inference_service import InferenceService

CLASS_NAMES = ("benign", "malignant")
IMG_SIZE = 32


def encode(img: Image.Image, fmt: str = "JPEG") -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def half_red_image(width: int = 64, height: int = 48) -> Image.Image:
    """Left half pure red, right half black."""
    arr = np.zeros((height, width, 3), dtype=np.uint8)
    arr[:, : width // 2, 0] = 255
    return Image.fromarray(arr)


def noise_image(width: int = 80, height: int = 60, seed: int = 0) -> Image.Image:
    rng = np.random.default_rng(seed)
    return Image.fromarray(rng.integers(0, 256, (height, width, 3), dtype=np.uint8))


def red_detector_bundle(img_size: int = IMG_SIZE):
    """
    Identity feature extractor + linear head.
    malignant logit = mean normalized red, benign logit = its negative,
    so outputs and Grad-CAM maps can be computed by hand.
    """
    model = LesionClassifier(nn.Identity(), num_features=3, num_outputs=2)
    with torch.no_grad():
        model.head.fc.weight.copy_(torch.tensor([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))
        model.head.fc.bias.zero_()
    return build_bundle(model, CLASS_NAMES, torch.device("cpu"), img_size)


class NaNFeatures(nn.Module):
    def forward(self, x):
        return x * float("nan")


def nan_bundle(img_size: int = IMG_SIZE):
    model = LesionClassifier(NaNFeatures(), num_features=3, num_outputs=2)
    return build_bundle(model, CLASS_NAMES, torch.device("cpu"), img_size)


@pytest.fixture(scope="session")
def test_settings():
    return Settings(device="cpu", img_size=IMG_SIZE, overlay_format="PNG")


@pytest.fixture(scope="session")
def red_bundle():
    return red_detector_bundle()


@pytest.fixture(scope="session")
def resnet_bundle():
    torch.manual_seed(0)
    model = build_classifier("resnet18", num_outputs=len(CLASS_NAMES))
    return build_bundle(model, CLASS_NAMES, torch.device("cpu"), 64)


@pytest.fixture(scope="session")
def red_service(red_bundle, test_settings):
    return InferenceService(models=red_bundle, settings=test_settings)


@pytest.fixture(scope="session")
def client(red_bundle, test_settings):
    """
    TestClient fixture.
    Startup (lifespan) runs once per session with the preloaded bundle.
    """
    with TestClient(create_app(models=red_bundle, settings=test_settings)) as c:
        yield c


@pytest.fixture(scope="session")
def resnet_client(resnet_bundle):
    settings = Settings(device="cpu", img_size=64)
    with TestClient(create_app(models=resnet_bundle, settings=settings)) as c:
        yield c
