# src/extraction/compressor.py — v1
"""Proof image compression with Pillow.

Images at or under the size threshold are sent untouched. Larger images are
downscaled so the longest edge fits ``max_dimension`` and re-encoded as JPEG
with decreasing quality until they fit (best effort: the smallest encoding
is returned even if it is still above the threshold).
"""

from __future__ import annotations

import io
import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from stepbatch.core.errors import SubmissionValidationError

logger = logging.getLogger(__name__)

# Extensions accepted as proof images
IMAGE_MIME_TYPES: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".heic": "image/heic",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
}

_QUALITY_STEPS = (85, 75, 65, 55, 45, 35)


def detect_media_type(path: str | Path) -> str | None:
    """MIME type for a proof image path, None when the file is not an image."""
    return IMAGE_MIME_TYPES.get(Path(path).suffix.lower())


def compress_image(
    data: bytes,
    content_type: str,
    max_bytes: int,
    max_dimension: int = 1920,
) -> tuple[bytes, str]:
    """Shrink an image under ``max_bytes``.

    Returns:
        (bytes, content_type) ready for upload.

    Raises:
        SubmissionValidationError: If the bytes are not a decodable image.
    """
    if len(data) <= max_bytes:
        return data, content_type

    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img.thumbnail((max_dimension, max_dimension))
            if img.mode != "RGB":
                img = img.convert("RGB")

            best = b""
            for quality in _QUALITY_STEPS:
                buf = io.BytesIO()
                img.save(buf, format="JPEG", quality=quality, optimize=True)
                best = buf.getvalue()
                if len(best) <= max_bytes:
                    break
    except (UnidentifiedImageError, OSError) as e:
        raise SubmissionValidationError(f"Unreadable image: {e}") from e

    logger.debug(
        "Compressed image %d -> %d bytes (limit %d)", len(data), len(best), max_bytes,
    )
    if len(best) > max_bytes:
        logger.warning("Image still above %d bytes after compression", max_bytes)
    return best, "image/jpeg"
