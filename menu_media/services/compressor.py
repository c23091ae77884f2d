"""Adaptive compression controller.

Image codecs have no analytic quality -> size function, so the controller
runs a bounded hill-climbing search over encoder quality and output
dimensions until the encoded size lands inside the profile's target band:

1. fit the decoded image to the profile box (``cover`` crops to fill,
   ``contain`` scales to fit inside; neither ever upscales);
2. encode and measure the real byte length;
3. too large -> lower quality (25% steps when more than 2x over, 10%
   otherwise) down to a floor, then shrink the dimensions by
   ``sqrt(max / current)``;
4. too small -> raise quality in fixed steps up to a ceiling.

The search never fails for missing the band: once the iteration budget is
spent (or no parameter can move any further) the best candidate seen so far
is returned with ``best_effort=True``. Only two consecutive codec failures
abort with :class:`EncodeError`.

The controller does no file I/O; it is a pure buffer-in/buffer-out transform.
"""
from __future__ import annotations

import io
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import NamedTuple

from PIL import Image, ImageOps

from menu_media.exceptions import EncodeError, PipelineTimeoutError
from menu_media.models import (
    CompressionProfile,
    CompressionResult,
    EncodeAttempt,
    FitMode,
    NormalizedImage,
)

from .normalizer import CONTENT_TYPES, EXTENSIONS, FormatNormalizer

logger = logging.getLogger(__name__)

MIN_QUALITY = 20
MAX_QUALITY = 95
QUALITY_STEP_UP = 5
LARGE_OVERSHOOT_FACTOR = 0.75
SMALL_OVERSHOOT_FACTOR = 0.9

MIN_WIDTH = 300
MIN_HEIGHT = 200

RETRY_QUALITY_PENALTY = 10
RETRY_MIN_QUALITY = 15
RETRY_SCALE = 0.7
MAX_CONSECUTIVE_FAILURES = 2

# Below this quality PNG output is palette-quantised.
PNG_LOSSLESS_QUALITY = 90
PNG_MIN_COLORS = 16

_RESAMPLE = Image.Resampling.LANCZOS
_WHITE = (255, 255, 255)


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------


class ImageEncoder(ABC):
    """Encodes a Pillow image into bytes of the given format."""

    @abstractmethod
    def encode(self, image: Image.Image, fmt: str, quality: int) -> bytes:
        """Return encoded bytes. *quality* is an integer in [1, 100]."""


def _flatten(image: Image.Image) -> Image.Image:
    """Return an RGB copy with any transparency composited onto white."""

    if image.mode == "RGB":
        return image
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode in ("RGBA", "LA", "PA"):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, _WHITE)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def _png_colors(quality: int) -> int:
    return max(PNG_MIN_COLORS, min(256, round(256 * quality / 100)))


class PillowEncoder(ImageEncoder):
    """Default encoder mapping the integer quality onto each Pillow codec."""

    def encode(self, image: Image.Image, fmt: str, quality: int) -> bytes:
        buffer = io.BytesIO()
        if fmt == "JPEG":
            _flatten(image).save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True)
        elif fmt == "WEBP":
            has_alpha = image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info
            work = image.convert("RGBA" if has_alpha else "RGB")
            work.save(buffer, format="WEBP", quality=quality, method=6)
        elif fmt == "PNG":
            self._encode_png(image, quality, buffer)
        else:
            raise ValueError(f"Unsupported output format: {fmt}")
        return buffer.getvalue()

    @staticmethod
    def _encode_png(image: Image.Image, quality: int, buffer: io.BytesIO) -> None:
        has_alpha = image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info
        work = image.convert("RGBA" if has_alpha else "RGB")
        if quality < PNG_LOSSLESS_QUALITY:
            work = work.quantize(colors=_png_colors(quality), method=Image.Quantize.FASTOCTREE)
        work.save(buffer, format="PNG", optimize=True)


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------


def fit_to_profile(image: Image.Image, profile: CompressionProfile) -> Image.Image:
    """Crop/scale *image* into the profile's target box without enlarging it."""

    width, height = image.size
    target_w, target_h = profile.target_size

    if profile.fit_mode is FitMode.COVER:
        if width >= target_w and height >= target_h:
            return ImageOps.fit(image, (target_w, target_h), method=_RESAMPLE)
        # Smaller than the box on at least one side: crop to the target
        # ratio but keep the native resolution.
        ratio = target_w / target_h
        crop_w = min(width, max(1, round(height * ratio)))
        crop_h = min(height, max(1, round(width / ratio)))
        left = (width - crop_w) // 2
        top = (height - crop_h) // 2
        return image.crop((left, top, left + crop_w, top + crop_h))

    scale = min(target_w / width, target_h / height, 1.0)
    if scale >= 1.0:
        return image
    size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return image.resize(size, _RESAMPLE)


def scale_dimensions(width: int, height: int, scale: float) -> tuple[int, int]:
    """Shrink (width, height) by *scale*, keeping the aspect ratio and the
    MIN_WIDTH x MIN_HEIGHT floor. Never grows the dimensions."""

    floor = max(MIN_WIDTH / width, MIN_HEIGHT / height)
    scale = min(1.0, max(scale, floor))
    return max(1, round(width * scale)), max(1, round(height * scale))


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class _Candidate(NamedTuple):
    data: bytes
    quality: int
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


def _better(current: _Candidate | None, candidate: _Candidate, max_bytes: float) -> _Candidate:
    """Pick the best-effort fallback: anything within max beats anything
    over it; among oversized the smallest wins, among undersized the largest."""

    if current is None:
        return candidate
    current_fits = current.size <= max_bytes
    candidate_fits = candidate.size <= max_bytes
    if current_fits != candidate_fits:
        return candidate if candidate_fits else current
    if candidate_fits:
        return candidate if candidate.size >= current.size else current
    return candidate if candidate.size < current.size else current


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise PipelineTimeoutError()


class CompressionController:
    """Searches quality/dimensions until the output fits the profile band."""

    def __init__(
        self,
        encoder: ImageEncoder | None = None,
        normalizer: FormatNormalizer | None = None,
    ) -> None:
        self._encoder = encoder or PillowEncoder()
        self._normalizer = normalizer or FormatNormalizer()

    def compress_bytes(
        self,
        data: bytes,
        profile: CompressionProfile,
        *,
        deadline: float | None = None,
    ) -> CompressionResult:
        """Decode *data* and compress it; see :meth:`compress`."""

        normalized = self._normalizer.normalize(data)
        return self.compress(normalized, profile, deadline=deadline)

    def compress(
        self,
        source: NormalizedImage,
        profile: CompressionProfile,
        *,
        deadline: float | None = None,
    ) -> CompressionResult:
        _check_deadline(deadline)
        base = fit_to_profile(source.image, profile)
        fmt = source.output_format
        min_bytes = profile.min_size_kb * 1024
        max_bytes = profile.max_size_kb * 1024

        quality = profile.initial_quality
        width, height = base.size
        frame = base
        attempts: list[EncodeAttempt] = []
        best: _Candidate | None = None
        failures = 0

        logger.debug(
            "Compressing %s %dx%d -> %s %dx%d, band %.0f-%.0fKB",
            source.source_format,
            source.width,
            source.height,
            fmt,
            width,
            height,
            profile.min_size_kb,
            profile.max_size_kb,
        )

        iteration = 0
        # A failure on the last budgeted attempt still gets its one retry.
        while iteration < profile.max_iterations or failures:
            iteration += 1
            _check_deadline(deadline)
            if frame.size != (width, height):
                frame = base.resize((width, height), _RESAMPLE)

            try:
                data = self._encoder.encode(frame, fmt, quality)
            except (OSError, ValueError, RuntimeError, MemoryError) as exc:
                failures += 1
                attempts.append(
                    EncodeAttempt(iteration=iteration, quality=quality, width=width, height=height, error=str(exc))
                )
                logger.warning(
                    "Encode attempt %d failed (quality %d, %dx%d): %s", iteration, quality, width, height, exc
                )
                if failures >= MAX_CONSECUTIVE_FAILURES:
                    raise EncodeError(f"Could not encode image: {exc}") from exc
                quality = max(RETRY_MIN_QUALITY, quality - RETRY_QUALITY_PENALTY)
                width, height = scale_dimensions(width, height, RETRY_SCALE)
                continue

            failures = 0
            size = len(data)
            attempts.append(
                EncodeAttempt(iteration=iteration, quality=quality, width=width, height=height, size_bytes=size)
            )
            logger.debug(
                "Iteration %d: quality %d, %dx%d, %.1fKB", iteration, quality, width, height, size / 1024
            )

            candidate = _Candidate(data, quality, width, height)
            if min_bytes <= size <= max_bytes:
                logger.info(
                    "Compressed %s to %.1fKB in %d iteration(s)", profile.category.value, size / 1024, iteration
                )
                return self._result(candidate, source, fmt, attempts, best_effort=False)

            best = _better(best, candidate, max_bytes)

            if size > max_bytes:
                step = self._step_down(quality, width, height, size, max_bytes)
                if step is None:
                    logger.info("No further reduction possible at quality %d, %dx%d", quality, width, height)
                    break
                quality, width, height = step
            elif quality < MAX_QUALITY:
                quality = min(MAX_QUALITY, quality + QUALITY_STEP_UP)
            else:
                logger.info("Quality ceiling reached at %.1fKB, below the band", size / 1024)
                break

        if best is None:
            raise EncodeError("Could not encode image: no attempt succeeded")

        logger.warning(
            "Target band %.0f-%.0fKB missed for %s after %d attempt(s); using best effort %.1fKB",
            profile.min_size_kb,
            profile.max_size_kb,
            profile.category.value,
            len(attempts),
            best.size / 1024,
        )
        return self._result(best, source, fmt, attempts, best_effort=True)

    @staticmethod
    def _step_down(
        quality: int, width: int, height: int, size: int, max_bytes: float
    ) -> tuple[int, int, int] | None:
        if quality > MIN_QUALITY:
            factor = LARGE_OVERSHOOT_FACTOR if size > 2 * max_bytes else SMALL_OVERSHOOT_FACTOR
            return max(MIN_QUALITY, round(quality * factor)), width, height

        new_width, new_height = scale_dimensions(width, height, math.sqrt(max_bytes / size))
        if (new_width, new_height) == (width, height):
            return None
        return quality, new_width, new_height

    @staticmethod
    def _result(
        candidate: _Candidate,
        source: NormalizedImage,
        fmt: str,
        attempts: list[EncodeAttempt],
        *,
        best_effort: bool,
    ) -> CompressionResult:
        return CompressionResult(
            data=candidate.data,
            format=fmt,
            content_type=CONTENT_TYPES[fmt],
            extension=EXTENSIONS[fmt],
            quality=candidate.quality,
            width=candidate.width,
            height=candidate.height,
            iterations=len(attempts),
            attempts=attempts,
            best_effort=best_effort,
            source_format=source.source_format,
            source_size=source.source_size,
        )
