"""Decision rules for WebP conversion: output path, quality and cleanup."""

from __future__ import annotations

import re
from typing import Optional

_CONVERTIBLE_SUFFIX = re.compile(r"\.(jpg|jpeg|png|jfif)$", re.IGNORECASE)

JPEG_QUALITY = 80
DEFAULT_QUALITY = 85

# WebP may grow by up to this factor before the original is kept alongside it.
MAX_GROWTH_FACTOR = 1.2

MESSAGE_LIMIT = 255


def derive_webp_path(original_path: str) -> str:
    """Return the storage path of the WebP rendition of ``original_path``."""

    webp_path = _CONVERTIBLE_SUFFIX.sub(".webp", original_path)
    if webp_path == original_path:
        webp_path = f"{original_path}.webp"
    return webp_path


def select_quality(mime: str) -> int:
    """Pick the WebP encode quality for a source MIME type."""

    mime = (mime or "").lower()
    if "jpeg" in mime or "jpg" in mime:
        return JPEG_QUALITY
    return DEFAULT_QUALITY


def should_delete_original(original_size: int, webp_size: int) -> bool:
    """Keep the original only when the WebP grew by more than 20%."""

    return not webp_size > original_size * MAX_GROWTH_FACTOR


def compression_ratio(original_size: int, new_size: int) -> float:
    """Percentage of bytes saved, rounded to two decimals."""

    if original_size == 0:
        return 0.0
    return round((1 - new_size / original_size) * 100, 2)


def truncate_message(message: Optional[str], limit: int = MESSAGE_LIMIT) -> Optional[str]:
    if message is None:
        return None
    return message[:limit]
