"""Image format probing.

Detects the image format from magic bytes, with the caller's format hint
or a filename extension as fallback. Used to reject blank or non-image
uploads before any extraction runs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

from product_sense.errors import ValidationError

# Format: (magic_bytes, offset, format)
_MAGIC_SIGNATURES: Final[list[tuple[bytes, int, str]]] = [
    (b"\xff\xd8\xff", 0, "jpeg"),
    (b"\x89PNG\r\n\x1a\n", 0, "png"),
    (b"GIF87a", 0, "gif"),
    (b"GIF89a", 0, "gif"),
    (b"BM", 0, "bmp"),
    (b"II*\x00", 0, "tiff"),  # little-endian
    (b"MM\x00*", 0, "tiff"),  # big-endian
]

_EXTENSION_MAP: Final[dict[str, str]] = {
    ".jpg": "jpeg",
    ".jpeg": "jpeg",
    ".png": "png",
    ".gif": "gif",
    ".webp": "webp",
    ".bmp": "bmp",
    ".tiff": "tiff",
    ".tif": "tiff",
    ".heic": "heic",
    ".heif": "heic",
}

SUPPORTED_IMAGE_EXTENSIONS: Final[frozenset[str]] = frozenset(_EXTENSION_MAP)

_MEDIA_TYPES: Final[dict[str, str]] = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "heic": "image/heic",
}

# Anything smaller cannot hold a decodable image
_MIN_IMAGE_SIZE: Final[int] = 16


def sniff_image_format(data: bytes, *, hint: str | None = None) -> str | None:
    """Detect the image format of raw bytes.

    Detection strategy (in priority order):
    1. Magic bytes
    2. ISO-BMFF ftyp box (HEIC/HEIF)
    3. The caller's hint (a format name or a filename)

    Args:
        data: Raw image bytes.
        hint: Optional "jpeg"/"png"/... or a filename like "photo.jpg".

    Returns:
        Lowercase format name, or None when the bytes are not a known image.
    """
    if not data:
        return None

    if data.startswith(b"RIFF") and len(data) >= 12 and data[8:12] == b"WEBP":
        return "webp"

    if len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in (b"heic", b"heix", b"mif1"):
        return "heic"

    for magic, offset, fmt in _MAGIC_SIGNATURES:
        if data[offset : offset + len(magic)] == magic:
            return fmt

    if hint:
        return _format_from_hint(hint)

    return None


def require_image(data: bytes | None) -> str:
    """Validate image bytes and return their format.

    Only the bytes themselves are trusted here: a format hint cannot make
    a corrupt upload pass.

    Raises:
        ValidationError: If the bytes are missing, too small, or not an image.
    """
    if not data:
        msg = "Image bytes are empty"
        raise ValidationError(msg)
    if len(data) < _MIN_IMAGE_SIZE:
        msg = f"Image is too small to decode ({len(data)} bytes)"
        raise ValidationError(msg)

    fmt = sniff_image_format(data)
    if fmt is None:
        msg = "Unrecognized image format"
        raise ValidationError(msg)
    return fmt


def media_type_for(image_format: str | None) -> str:
    """MIME type for a format name (defaults to JPEG)."""
    return _MEDIA_TYPES.get((image_format or "").lower(), "image/jpeg")


def _format_from_hint(hint: str) -> str | None:
    hint = hint.lower().strip()
    if hint in _MEDIA_TYPES:
        return hint
    if hint == "jpg":
        return "jpeg"
    return _EXTENSION_MAP.get(Path(hint).suffix)
