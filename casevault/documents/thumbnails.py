"""
Thumbnail generation for image uploads (Pillow).

Thumbnails are PNG, bounded by a square box while keeping the aspect ratio.
"""

from __future__ import annotations

import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("casevault.documents.thumbnails")

THUMBNAIL_MIME_PREFIX = "image/"


def supports_thumbnail(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.startswith(THUMBNAIL_MIME_PREFIX)


def generate_thumbnail(data: bytes, size: int = 256) -> bytes:
    """
    Render a PNG thumbnail no larger than ``size`` x ``size``.

    Raises:
        ValueError: the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA", "L"):
                img = img.convert("RGBA")
            img.thumbnail((size, size))
            out = io.BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Cannot read image: {e}") from e
    return out.getvalue()
