"""End-to-end pipeline tests against a local-only storage chain."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import ServiceUnavailable

from menu_media.exceptions import (
    DecodeError,
    EncodeError,
    PipelineTimeoutError,
    ProfileConfigError,
    StorageError,
)
from menu_media.models import AssetCategory, Backend, PersistState, UploadRequest
from menu_media.services.compressor import CompressionController
from menu_media.services.pipeline import ImagePipeline
from menu_media.services.storage import GCSBackend, StorageResolver

from conftest import FAST_RETRY, SizedEncoder

KB = 1024


def _stage(staging_root: Path, data: bytes) -> Path:
    path = staging_root / "incoming.upload"
    path.write_bytes(data)
    return path


def _request(data: bytes, category: AssetCategory = AssetCategory.MENU_ITEM) -> UploadRequest:
    return UploadRequest(
        data=data,
        content_type="image/jpeg",
        declared_size=len(data),
        user_id="user-1",
        restaurant_id=12,
        category=category,
    )


class SlowEncoder:
    def encode(self, image, fmt, quality):
        time.sleep(0.3)
        return b"\0" * (100 * KB)


def test_process_persists_locally(pipeline: ImagePipeline, make_image, local_backend) -> None:
    asset = pipeline.process(_request(make_image("JPEG", (1200, 800))))

    assert asset.state is PersistState.PERSISTED_LOCAL
    assert asset.url.startswith("/uploads/menu-item/")
    assert asset.url.endswith(".jpg")
    assert asset.content_type == "image/jpeg"
    assert Path(asset.path).stat().st_size == asset.size
    assert asset.size <= 150 * KB
    assert (asset.user_id, asset.restaurant_id) == ("user-1", 12)


def test_process_file_removes_staged_input(pipeline: ImagePipeline, make_image, staging_root: Path) -> None:
    staged = _stage(staging_root, make_image("PNG", (300, 300)))

    asset = pipeline.process_file(staged, category="logo", content_type="image/png", user_id="user-1")

    assert asset.backend is Backend.LOCAL
    assert asset.key.endswith(".png")
    assert not staged.exists()


def test_process_file_removes_input_on_decode_error(
    pipeline: ImagePipeline, staging_root: Path, local_backend
) -> None:
    staged = _stage(staging_root, b"definitely not an image")

    with pytest.raises(DecodeError):
        pipeline.process_file(staged, category="menu-item", content_type="image/jpeg", user_id="user-1")

    assert not staged.exists()
    assert not local_backend.root.exists() or not any(local_backend.root.rglob("*.*"))


def test_tiff_is_rejected_without_persisting(pipeline: ImagePipeline, make_image, local_backend) -> None:
    with pytest.raises(DecodeError):
        pipeline.process(_request(make_image("TIFF", (200, 200))))

    assert not local_backend.root.exists() or not any(local_backend.root.rglob("*.*"))


def test_process_file_unknown_category(pipeline: ImagePipeline, staging_root: Path) -> None:
    staged = _stage(staging_root, b"data")

    with pytest.raises(ProfileConfigError):
        pipeline.process_file(staged, category="poster", content_type="image/jpeg", user_id="user-1")

    assert not staged.exists()


def test_timeout_removes_staged_input(local_backend, staging_root: Path, make_image) -> None:
    pipeline = ImagePipeline(
        StorageResolver([local_backend]),
        controller=CompressionController(SlowEncoder()),
        staging_root=staging_root,
        timeout=0.05,
        encode_workers=1,
        io_workers=1,
    )
    staged = _stage(staging_root, make_image("JPEG", (640, 480)))

    try:
        with pytest.raises(PipelineTimeoutError):
            pipeline.process_file(staged, category="menu-item", content_type="image/jpeg", user_id="user-1")
    finally:
        pipeline.shutdown()

    assert not staged.exists()
    assert not local_backend.root.exists() or not any(local_backend.root.rglob("*.*"))


def test_encode_failure_removes_staged_input(local_backend, staging_root: Path, make_image) -> None:
    encoder = SizedEncoder(lambda q, w, h: 100 * KB, failures=2)
    staged = _stage(staging_root, make_image("JPEG", (640, 480)))

    with ImagePipeline(
        StorageResolver([local_backend]),
        controller=CompressionController(encoder),
        staging_root=staging_root,
        encode_workers=1,
        io_workers=1,
    ) as pipeline:
        with pytest.raises(EncodeError):
            pipeline.process_file(staged, category="menu-item", content_type="image/jpeg", user_id="user-1")

    assert not staged.exists()
    assert not local_backend.root.exists() or not any(local_backend.root.rglob("*.*"))


def test_storage_failure_removes_staged_and_partial_files(
    pipeline: ImagePipeline, staging_root: Path, local_backend, make_image, monkeypatch
) -> None:
    def failing_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("menu_media.services.storage.os.replace", failing_replace)
    staged = _stage(staging_root, make_image("JPEG", (640, 480)))

    with pytest.raises(StorageError) as excinfo:
        pipeline.process_file(staged, category="menu-item", content_type="image/jpeg", user_id="user-1")

    assert [name for name, _ in excinfo.value.failures] == ["local"]
    assert not staged.exists()
    assert not list(local_backend.root.rglob("*.part"))
    assert not any(path.is_file() for path in local_backend.root.rglob("*"))


def test_remote_outage_falls_back_to_local(local_backend, staging_root: Path, make_image) -> None:
    client = MagicMock()
    client.bucket.return_value.blob.return_value.upload_from_string.side_effect = ServiceUnavailable("down")
    resolver = StorageResolver([GCSBackend("menu-bucket", client=client, retry=FAST_RETRY), local_backend])

    with ImagePipeline(resolver, staging_root=staging_root, encode_workers=1, io_workers=1) as pipeline:
        asset = pipeline.process(_request(make_image("WEBP", (900, 900)), AssetCategory.BANNER))

    assert asset.state is PersistState.PERSISTED_LOCAL
    assert asset.key.startswith("banner/")
    assert asset.key.endswith(".webp")


def test_delete_is_idempotent(pipeline: ImagePipeline, make_image) -> None:
    asset = pipeline.process(_request(make_image("JPEG", (700, 500))))

    pipeline.delete(asset)
    pipeline.delete_key(asset.backend, asset.key)

    assert not Path(asset.path).exists()


def test_repeated_uploads_get_distinct_keys(pipeline: ImagePipeline, make_image) -> None:
    data = make_image("JPEG", (800, 600))

    keys = {pipeline.process(_request(data)).key for _ in range(3)}

    assert len(keys) == 3
