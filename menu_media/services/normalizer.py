"""Source-format detection and decoding.

The format is sniffed from the image bytes; the declared MIME type and the
file extension are ignored because mobile clients frequently get them wrong.
"""
from __future__ import annotations

import io
import logging
import warnings

from PIL import Image, ImageOps, UnidentifiedImageError

from menu_media.exceptions import DecodeError
from menu_media.models import NormalizedImage

logger = logging.getLogger(__name__)

# Formats re-encoded as themselves; anything else accepted becomes JPEG.
OUTPUT_FORMATS = {"JPEG", "PNG", "WEBP"}
# Decodable inputs; mirrors the upload MIME allow-list. MPO is a multi-frame
# JPEG written by many phone cameras.
ACCEPTED_FORMATS = {"JPEG", "MPO", "PNG", "WEBP", "GIF"}

CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}
EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
}

MAX_PIXELS = 50_000_000


def detect_format(data: bytes) -> str | None:
    """Return the Pillow format name for *data*, or None if unrecognised."""

    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.format
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def output_format_for(source_format: str) -> str:
    if source_format == "MPO":
        return "JPEG"
    return source_format if source_format in OUTPUT_FORMATS else "JPEG"


class FormatNormalizer:
    """Decodes an upload and picks the canonical output codec."""

    def __init__(self, max_pixels: int = MAX_PIXELS) -> None:
        self._max_pixels = max_pixels

    def normalize(self, data: bytes) -> NormalizedImage:
        if not data:
            raise DecodeError("Invalid image: empty upload")

        try:
            img = Image.open(io.BytesIO(data))
        except Image.DecompressionBombError as exc:
            raise DecodeError("Invalid image: too many pixels") from exc
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.info("Rejected undecodable upload (%d bytes): %s", len(data), exc)
            raise DecodeError("Invalid image: format not recognised") from exc

        source_format = img.format or ""
        if source_format not in ACCEPTED_FORMATS:
            img.close()
            logger.info("Rejected unsupported image format %s", source_format or "unknown")
            raise DecodeError(f"Invalid image: unsupported format {source_format or 'unknown'}")

        width, height = img.size
        if width < 1 or height < 1 or width * height > self._max_pixels:
            img.close()
            raise DecodeError(f"Invalid image: unsupported dimensions {width}x{height}")

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                img.load()
            # Phone cameras store rotation in EXIF; bake it into the pixels.
            upright = ImageOps.exif_transpose(img)
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombWarning) as exc:
            img.close()
            logger.info("Rejected corrupt %s upload: %s", source_format, exc)
            raise DecodeError("Invalid image: file is corrupt or truncated") from exc

        output_format = output_format_for(source_format)
        logger.debug(
            "Detected %s %dx%d (%d bytes), output %s",
            source_format,
            upright.width,
            upright.height,
            len(data),
            output_format,
        )
        return NormalizedImage(
            image=upright,
            source_format=source_format,
            output_format=output_format,
            source_size=len(data),
        )
