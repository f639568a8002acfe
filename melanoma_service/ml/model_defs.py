import timm
import torch
from torch import nn


class TimmFeatures(nn.Module):
    """Wraps a timm backbone so forward() returns the last spatial feature map."""

    def __init__(self, backbone):
        super().__init__()
        self.backbone = backbone
        self.num_features = backbone.num_features

    def forward(self, x):
        return self.backbone.forward_features(x)


class ClassifierHead(nn.Module):
    def __init__(self, num_features: int, num_outputs: int):
        super().__init__()
        self.pool = nn.AdaptiveAvgPool2d((1, 1))
        self.fc = nn.Linear(num_features, num_outputs)

    def forward(self, feats):
        pooled = self.pool(feats).flatten(1)
        return self.fc(pooled)


class LesionClassifier(nn.Module):
    """
    features: image [B,3,H,W] -> feature map [B,C,h,w]
    head:     feature map -> logits [B,num_outputs]

    Kept as two modules so Grad-CAM can differentiate the head w.r.t. the
    feature map without hooks on the shared model.
    """

    def __init__(self, features: nn.Module, num_features: int, num_outputs: int):
        super().__init__()
        self.features = features
        self.head = ClassifierHead(num_features, num_outputs)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.head(self.features(x))


def build_classifier(arch: str, num_outputs: int) -> LesionClassifier:
    backbone = timm.create_model(arch, pretrained=False, num_classes=0)
    features = TimmFeatures(backbone)
    return LesionClassifier(features, features.num_features, num_outputs)
