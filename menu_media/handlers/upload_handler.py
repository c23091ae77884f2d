"""HTTP upload gateway for menu images."""
from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile

from menu_media.exceptions import (
    DecodeError,
    EncodeError,
    ImagePipelineError,
    PipelineTimeoutError,
    ProfileConfigError,
    StorageError,
    UploadRejectedError,
)
from menu_media.models import Backend, CompressionProfile, StoredAsset
from menu_media.services.gateway import check_content_type, check_size, stage_upload
from menu_media.services.pipeline import ImagePipeline, get_pipeline

router = APIRouter(prefix="/api/images", tags=["images"])
logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[ImagePipelineError], int]] = [
    (DecodeError, 400),
    (EncodeError, 422),
    (PipelineTimeoutError, 504),
    (StorageError, 503),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _profile_or_404(pipeline: ImagePipeline, category: str) -> CompressionProfile:
    try:
        return pipeline.registry.get(category)
    except ProfileConfigError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown image category: {category}") from exc


def _raise_http(exc: ImagePipelineError) -> NoReturn:
    if isinstance(exc, UploadRejectedError):
        status_code = exc.status_code
    else:
        status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("Image request failed (%d): %s", status_code, exc.message)
    else:
        logger.warning("Image request rejected (%d): %s", status_code, exc.message)
    raise HTTPException(status_code=status_code, detail=exc.message) from exc


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post(
    "/{category}",
    status_code=201,
    response_model=StoredAsset,
    response_model_exclude={"path"},
)
def upload_image(
    category: str,
    file: UploadFile = File(...),
    user_id: str = Form(...),
    restaurant_id: int | None = Form(None),
    pipeline: ImagePipeline = Depends(get_pipeline),
) -> StoredAsset:
    profile = _profile_or_404(pipeline, category)
    try:
        content_type = check_content_type(file.content_type)
        if file.size is not None:
            check_size(file.size, profile)
        staged = stage_upload(file.file, pipeline.staging_root, profile)
        return pipeline.process_file(
            staged,
            category=profile.category,
            content_type=content_type,
            user_id=user_id,
            restaurant_id=restaurant_id,
        )
    except ImagePipelineError as exc:
        _raise_http(exc)


@router.delete("/{backend}/{category}/{filename}", status_code=204)
def delete_image(
    backend: Backend,
    category: str,
    filename: str,
    pipeline: ImagePipeline = Depends(get_pipeline),
) -> Response:
    profile = _profile_or_404(pipeline, category)
    if filename.startswith(".") or "/" in filename or "\\" in filename:
        raise HTTPException(status_code=400, detail="Invalid filename")
    try:
        pipeline.delete_key(backend, f"{profile.category.value}/{filename}")
    except ImagePipelineError as exc:
        _raise_http(exc)
    return Response(status_code=204)
