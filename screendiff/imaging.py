from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import Any, Protocol

from PIL import Image, UnidentifiedImageError

from .errors import CompressionError, ImageDecodeError

logger = logging.getLogger(__name__)

MAX_DIMENSION = 800
START_QUALITY = 70
MIN_QUALITY = 10
QUALITY_STEP = 10
JPEG_MIME = "image/jpeg"


class ImageCodec(Protocol):
    def decode(self, raw: bytes) -> Any: ...

    def dimensions(self, image: Any) -> tuple[int, int]: ...

    def resize(self, image: Any, size: tuple[int, int]) -> Any: ...

    def encode_jpeg(self, image: Any, quality: int) -> bytes: ...


class PillowCodec:
    def decode(self, raw: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(raw))
            image.load()
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            raise ImageDecodeError() from exc
        return image

    def dimensions(self, image: Image.Image) -> tuple[int, int]:
        return image.size

    def resize(self, image: Image.Image, size: tuple[int, int]) -> Image.Image:
        return image.resize(size, Image.Resampling.LANCZOS)

    def encode_jpeg(self, image: Image.Image, quality: int) -> bytes:
        if image.mode != "RGB":
            image = image.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        return buffer.getvalue()


class ImageCompressor:
    """Re-encodes images as JPEG data URIs that fit a size budget.

    Images larger than 800px on either side are scaled down first. Quality
    starts at 70 and drops in steps of 10 while the result is over budget;
    at quality 10 the result is returned even if it is still too large.
    """

    def __init__(self, codec: ImageCodec | None = None):
        self._codec = codec or PillowCodec()

    def compress(self, image_data: str, max_size_kb: int = 500) -> str:
        if not image_data:
            raise ImageDecodeError("No image data provided")

        _, payload = split_data_uri(image_data)
        logger.debug("Compressing image: input %dKB, target %dKB", data_size_kb(payload), max_size_kb)
        try:
            raw = base64.b64decode(payload)
        except (binascii.Error, ValueError) as exc:
            raise ImageDecodeError() from exc

        try:
            image = self._codec.decode(raw)
            width, height = self._codec.dimensions(image)
            bounded = bounded_dimensions(width, height)
            if bounded != (width, height):
                image = self._codec.resize(image, bounded)

            quality = START_QUALITY
            compressed = to_data_uri(self._codec.encode_jpeg(image, quality))
            while data_size_kb(compressed) > max_size_kb and quality > MIN_QUALITY:
                quality -= QUALITY_STEP
                compressed = to_data_uri(self._codec.encode_jpeg(image, quality))
        except ImageDecodeError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CompressionError() from exc

        logger.info(
            "Image compressed: %dKB -> %dKB (quality %d)",
            data_size_kb(payload),
            data_size_kb(compressed),
            quality,
        )
        return compressed


def bounded_dimensions(width: int, height: int, limit: int = MAX_DIMENSION) -> tuple[int, int]:
    if width <= limit and height <= limit:
        return (width, height)
    if width > height:
        return (limit, max(1, round(height * limit / width)))
    return (max(1, round(width * limit / height)), limit)


def split_data_uri(data: str) -> tuple[str | None, str]:
    """Return ``(mime_type, base64_payload)`` for a data URI or bare base64."""
    data = data.strip()
    if "," not in data:
        return (None, data)
    header, payload = data.split(",", 1)
    mime_type = None
    if header.startswith("data:"):
        mime_type = header[5:].split(";", 1)[0] or None
    return (mime_type, payload)


def to_data_uri(raw: bytes, mime_type: str = JPEG_MIME) -> str:
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def data_size_kb(data: str) -> int:
    """Approximate decoded size in KB of a data URI or bare base64 string."""
    _, payload = split_data_uri(data)
    return round(len(payload) * 3 / 4 / 1024)


def decoded_size(data: str) -> int:
    _, payload = split_data_uri(data)
    return len(payload) * 3 // 4
