"""Request-level upload constraints.

These checks run before anything is decoded: the declared MIME type must be
on the allow-list and the raw payload must stay under the category's upload
limit. Oversized bodies are cut off while streaming, so they never reach the
compression controller.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from menu_media.exceptions import UploadRejectedError
from menu_media.models import CompressionProfile
from menu_media.utils.staging import new_staging_path

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/gif",
    }
)

_CHUNK_SIZE = 64 * 1024
_MB = 1024 * 1024


def check_content_type(content_type: str | None) -> str:
    """Return the normalised MIME type or raise a 415 rejection."""

    normalized = (content_type or "").split(";", 1)[0].strip().lower()
    if normalized not in ALLOWED_CONTENT_TYPES:
        raise UploadRejectedError(
            415, f"Unsupported content type {normalized or 'unknown'}; expected JPEG, PNG, WebP or GIF"
        )
    return normalized


def check_size(size: int, profile: CompressionProfile) -> None:
    if size > profile.max_upload_bytes:
        raise UploadRejectedError(
            413,
            f"File size {size / _MB:.2f}MB exceeds maximum allowed size of "
            f"{profile.max_upload_bytes / _MB:.2f}MB",
        )


def stage_upload(stream: BinaryIO, staging_root: str | Path, profile: CompressionProfile) -> Path:
    """Copy *stream* into a new staging file, enforcing the profile's size limit.

    The caller owns the returned path. On any failure the partial file is
    removed before the exception propagates.
    """

    path = new_staging_path(staging_root)
    written = 0
    try:
        with path.open("wb") as fh:
            while True:
                chunk = stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                check_size(written, profile)
                fh.write(chunk)
    except BaseException:
        path.unlink(missing_ok=True)
        raise

    if written == 0:
        path.unlink(missing_ok=True)
        raise UploadRejectedError(400, "Empty upload")
    logger.debug("Staged %d byte upload at %s", written, path)
    return path
