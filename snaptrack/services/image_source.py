"""Image sources backed by files on disk."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Optional

from snaptrack.models.enums import ImageSource
from snaptrack.models.schemas import CapturedImage
from snaptrack.utils.image_processing import optimize_for_upload

logger = logging.getLogger(__name__)


class FileImageSource:
    """``ImageSourcePort`` that "picks" a file from the library.

    A missing path behaves like a cancelled picker. JPEG/PNG images are
    optimised for upload; anything else is sent as is.
    """

    def __init__(self, path: Optional[str], source: ImageSource = ImageSource.LIBRARY, optimize: bool = True) -> None:
        self.path = Path(path) if path else None
        self.source = source
        self.optimize = optimize

    async def acquire(self) -> Optional[CapturedImage]:
        if self.path is None or not self.path.is_file():
            logger.info("[image] no image selected (%s)", self.path)
            return None
        data = await asyncio.to_thread(self.path.read_bytes)
        content_type = mimetypes.guess_type(self.path.name)[0] or "application/octet-stream"
        filename = self.path.name
        if self.optimize and content_type.startswith("image/"):
            data = await asyncio.to_thread(optimize_for_upload, data)
            content_type = "image/jpeg"
            filename = f"{self.path.stem}.jpg"
        return CapturedImage(
            uri=str(self.path),
            source=self.source,
            content_type=content_type,
            filename=filename,
            data=data,
        )
