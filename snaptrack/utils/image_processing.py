"""Image preparation before upload.

Phone cameras produce large, often rotated images. Before uploading we
apply the EXIF orientation, convert to RGB, shrink the longest edge and
re-encode as JPEG. Pillow is the imaging backend. Data Pillow cannot
decode (for example a PDF) is passed through unchanged and the server
deals with it.
"""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Optional, Tuple

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from snaptrack.core.config import settings

logger = logging.getLogger(__name__)


def _apply_exif_orientation(img: Image.Image) -> Tuple[Image.Image, bool]:
    """Return the image with EXIF orientation applied and whether it changed."""
    try:
        orientation = img.getexif().get(ExifTags.Base.Orientation, 1)
        if orientation == 1:
            return img, False
        return ImageOps.exif_transpose(img), True
    except (OSError, ValueError):
        return img, False


def optimize_for_upload(
    image_data: bytes,
    max_edge: Optional[int] = None,
    quality: Optional[int] = None,
) -> bytes:
    """Downsize and re-encode ``image_data`` as JPEG.

    :param image_data: Raw image bytes
    :param max_edge: Maximum size of the longest edge in pixels
    :param quality: JPEG quality (1-95)
    :returns: JPEG bytes, or the original bytes when they are not an image
    """
    max_edge = max_edge or settings.UPLOAD_MAX_IMAGE_EDGE
    quality = quality or settings.UPLOAD_JPEG_QUALITY
    try:
        with Image.open(BytesIO(image_data)) as img:
            img, rotated = _apply_exif_orientation(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            width, height = img.size
            longest = max(width, height)
            if longest > max_edge:
                scale = max_edge / float(longest)
                img = img.resize((max(1, int(width * scale)), max(1, int(height * scale))))
            buf = BytesIO()
            img.save(buf, format="JPEG", quality=quality, optimize=True)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.info("[image] leaving upload bytes untouched: %s", exc)
        return image_data
    logger.debug("[image] optimised %d -> %d bytes (rotated=%s)", len(image_data), buf.tell(), rotated)
    return buf.getvalue()
