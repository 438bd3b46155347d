from __future__ import annotations

import logging
from pathlib import Path

from .interfaces import ImageSink
from .models import AcquiredImage

logger = logging.getLogger(__name__)


class FileImageSink(ImageSink):
    """Writes each acquired image to ``<directory>/<prefix><index><ext>``."""

    def __init__(self, directory: Path, prefix: str = "scannedImage") -> None:
        self.directory = Path(directory)
        self.prefix = prefix

    def path_for(self, image: AcquiredImage) -> Path:
        return self.directory / f"{self.prefix}{image.index}{image.file_extension}"

    def save_image(self, image: AcquiredImage) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(image)
        if path.exists():
            path.unlink()
        path.write_bytes(image.data)
        logger.debug(f"Saved image {image.index} to {path}")
        return path
