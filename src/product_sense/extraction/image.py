"""Local image analysis with Pillow.

Handles the signals that need no remote model:
- image_hash: sha256 of the raw bytes (exact-duplicate detection)
- quality_score: resolution, sharpness and exposure folded into 0..1
- dominant_colors: top palette colors as hex strings
- cropping detected objects out of a multi-object image

Everything here is CPU-bound and synchronous; async callers run it via
asyncio.to_thread.
"""

from __future__ import annotations

import hashlib
import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from product_sense.errors import ExtractionError
from product_sense.extraction.base import BoundingBox, RecognitionSignals

# Images are downscaled to this longest side before pixel statistics
_ANALYSIS_SIZE = 512

# Shortest side (px) at which the resolution component saturates
_FULL_RESOLUTION_SIDE = 512

# Laplacian variance at which the sharpness component saturates
_FULL_SHARPNESS_VARIANCE = 1000.0

_DOMINANT_COLOR_COUNT = 5


def image_hash(data: bytes) -> str:
    """Content hash of the raw image bytes."""
    return hashlib.sha256(data).hexdigest()


def analyze_image(data: bytes) -> RecognitionSignals:
    """Compute hash, quality and colors for raw image bytes.

    Raises:
        ExtractionError: If Pillow cannot decode the bytes.
    """
    img = _open(data)

    return RecognitionSignals(
        image_hash=image_hash(data),
        image_format=(img.format or "").lower() or None,
        size_bytes=len(data),
        quality_score=quality_score(img),
        dominant_colors=dominant_colors(img),
        extra={"width": img.width, "height": img.height},
    )


def quality_score(img: Image.Image) -> float:
    """Score image usefulness for recognition in [0, 1].

    40% resolution, 40% sharpness (variance of a Laplacian), 20% exposure
    (distance of mean brightness from mid-gray).
    """
    resolution = min(1.0, min(img.size) / _FULL_RESOLUTION_SIDE)

    gray_img = img.convert("L")
    gray_img.thumbnail((_ANALYSIS_SIZE, _ANALYSIS_SIZE))
    gray = np.asarray(gray_img, dtype=np.float32)

    if gray.shape[0] < 3 or gray.shape[1] < 3:
        sharpness = 0.0
    else:
        laplacian = (
            4 * gray[1:-1, 1:-1]
            - gray[:-2, 1:-1]
            - gray[2:, 1:-1]
            - gray[1:-1, :-2]
            - gray[1:-1, 2:]
        )
        sharpness = min(1.0, float(laplacian.var()) / _FULL_SHARPNESS_VARIANCE)

    brightness = float(gray.mean()) / 255.0 if gray.size else 0.0
    exposure = max(0.0, 1.0 - abs(brightness - 0.5) * 2)

    return round(0.4 * resolution + 0.4 * sharpness + 0.2 * exposure, 4)


def dominant_colors(img: Image.Image, count: int = _DOMINANT_COLOR_COUNT) -> list[str]:
    """Most frequent palette colors, most frequent first, as "#rrggbb"."""
    small = img.convert("RGB")
    small.thumbnail((64, 64))
    quantized = small.quantize(colors=count)
    palette = quantized.getpalette() or []
    color_counts = sorted(quantized.getcolors() or [], key=lambda c: -c[0])

    colors: list[str] = []
    for _, index in color_counts[:count]:
        r, g, b = palette[index * 3 : index * 3 + 3]
        colors.append(f"#{r:02x}{g:02x}{b:02x}")
    return colors


def crop_image(data: bytes, box: BoundingBox, *, image_format: str = "PNG") -> bytes:
    """Cut a normalized bounding box out of an image.

    Returns the whole image re-encoded when the box is degenerate.

    Raises:
        ExtractionError: If Pillow cannot decode the bytes.
    """
    img = _open(data)
    box = box.clamped()

    left = int(box.x * img.width)
    top = int(box.y * img.height)
    right = max(left + 1, int((box.x + box.width) * img.width))
    bottom = max(top + 1, int((box.y + box.height) * img.height))

    region = img.crop((left, top, min(right, img.width), min(bottom, img.height)))
    if region.mode not in ("RGB", "L"):
        region = region.convert("RGB")

    buffer = io.BytesIO()
    region.save(buffer, format=image_format)
    return buffer.getvalue()


def _open(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        msg = f"Cannot decode image: {e}"
        raise ExtractionError(msg) from e
    return img
