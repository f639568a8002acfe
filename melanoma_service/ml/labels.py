import json
import logging
from pathlib import Path
from typing import List, Optional

from melanoma_service.core.config import settings

logger = logging.getLogger(__name__)


def validate_class_names(names) -> List[str]:
    if not isinstance(names, list) or not names:
        raise ValueError("Class names must be a non-empty list")

    cleaned = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"Invalid class name: {name!r}")
        cleaned.append(name.strip())

    if len(set(cleaned)) != len(cleaned):
        raise ValueError(f"Duplicate class names: {cleaned}")
    return cleaned


def load_class_names(path: Optional[Path] = None) -> List[str]:
    """
    Load the model's output classes from configs/classes.json.

    Expected format:
    {
      "classes": ["benign", "malignant"]
    }

    Falls back to the CLASS_NAMES setting when the file does not exist.
    """
    path = path or settings.classes_path
    if not path.exists():
        logger.info(f"No class file at {path}, using configured class names")
        return validate_class_names(list(settings.class_names))

    with open(path, "r") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("classes")
    return validate_class_names(data)
