"""Model file discovery — GGUF files available to llama-server."""

from __future__ import annotations

import logging
import math
from pathlib import Path

from openchatmobile.protocol import MODEL_EXTENSION

log = logging.getLogger(__name__)

MB = 1024 * 1024


def size_mb(size: int) -> int:
    """Bytes → MiB, rounded half-up."""
    return math.floor(size / MB + 0.5)


def list_models(models_dir: str | Path) -> list[dict]:
    """Describe every model file in *models_dir*; I/O errors give ``[]``."""
    root = Path(models_dir)
    try:
        if not root.is_dir():
            return []
        models = []
        for path in sorted(root.iterdir()):
            if path.suffix != MODEL_EXTENSION or not path.is_file():
                continue
            size = path.stat().st_size
            models.append({
                "name": path.name,
                "path": str(path),
                "size": size,
                "sizeMB": size_mb(size),
            })
        return models
    except OSError as exc:
        log.error("error reading models from %s: %s", root, exc)
        return []
