from pathlib import Path
from typing import List

import torch
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]

class Settings(BaseSettings):
    app_name: str = "melanoma-inference"
    env: str = "production"
    device: str = "auto"
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    model_arch: str = "efficientnet_b0"
    model_file: str = "melanoma_classifier.pth"
    img_size: int = 224
    class_names: List[str] = ["benign", "malignant"]
    confidence_decimals: int = 4

    alpha_overlay: float = 0.45
    colormap: str = "jet"
    overlay_format: str = "JPEG"
    jpeg_quality: int = 90

    max_upload_bytes: int = 10 * 1024 * 1024
    max_image_pixels: int = 40_000_000
    allowed_content_types: List[str] = [
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "application/octet-stream",
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        protected_namespaces=(),
    )

    @property
    def models_dir(self) -> Path:
        return PROJECT_ROOT / "models"

    @property
    def configs_dir(self) -> Path:
        return PROJECT_ROOT / "configs"

    @property
    def model_path(self) -> Path:
        return self.models_dir / self.model_file

    @property
    def classes_path(self) -> Path:
        return self.configs_dir / "classes.json"

    @property
    def device_torch(self) -> torch.device:
        if self.device == "cpu":
            return torch.device("cpu")
        if self.device == "cuda":
            return torch.device("cuda")
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")

settings = Settings()
