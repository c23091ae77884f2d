"""Error taxonomy surfaced by the image ingestion pipeline.

Only four failures reach callers: ``DecodeError`` (bad input),
``EncodeError`` (codec failed twice), ``PipelineTimeoutError`` (wall-clock
budget exceeded) and ``StorageError`` (every backend failed). Remote storage
outages and compression band misses are recovered inside the pipeline.
"""
from __future__ import annotations

from typing import Sequence


class ImagePipelineError(Exception):
    """Base class for failures that callers are expected to surface."""

    default_message = "Image processing failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class DecodeError(ImagePipelineError):
    """The upload is corrupt, truncated or not a supported image format."""

    default_message = "Invalid image"


class EncodeError(ImagePipelineError):
    """The codec failed on two consecutive attempts."""

    default_message = "Could not encode image"


class PipelineTimeoutError(ImagePipelineError, TimeoutError):
    """Decode through final encode exceeded the configured budget."""

    default_message = "Image processing timed out"


class StorageError(ImagePipelineError):
    """No storage backend accepted the processed image."""

    default_message = "Image storage is unavailable"

    def __init__(self, message: str | None = None, failures: Sequence[tuple[str, str]] = ()) -> None:
        super().__init__(message)
        self.failures = list(failures)


class UploadRejectedError(ImagePipelineError):
    """The raw upload violates a request-level constraint (size, MIME type)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProfileConfigError(LookupError):
    """Unknown asset category or invalid profile override (programmer error)."""
