"""HTTP-level tests for the upload gateway routes."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from menu_media.main import app
from menu_media.services.pipeline import ImagePipeline, get_pipeline
from menu_media.services.profiles import ProfileRegistry
from menu_media.services.storage import StorageResolver


def _client(pipeline: ImagePipeline) -> TestClient:
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    return TestClient(app)


@pytest.fixture
def client(pipeline: ImagePipeline):
    yield _client(pipeline)
    app.dependency_overrides.clear()


def _upload(client: TestClient, category: str, data: bytes, content_type: str = "image/jpeg"):
    return client.post(
        f"/api/images/{category}",
        files={"file": ("dish.img", data, content_type)},
        data={"user_id": "user-1", "restaurant_id": "12"},
    )


def test_upload_returns_created_asset(client: TestClient, make_image, staging_root) -> None:
    response = _upload(client, "menu-item", make_image("JPEG", (1200, 800)))

    assert response.status_code == 201
    body = response.json()
    assert body["backend"] == "local"
    assert body["url"].startswith("/uploads/menu-item/")
    assert body["content_type"] == "image/jpeg"
    assert "path" not in body
    assert (body["user_id"], body["restaurant_id"]) == ("user-1", 12)
    assert not any(staging_root.iterdir())


def test_logo_upload_is_stored(client: TestClient, make_image, local_backend) -> None:
    response = _upload(client, "logo", make_image("PNG", (300, 300)), "image/png")

    assert response.status_code == 201
    assert local_backend.exists(response.json()["key"])


def test_unsupported_content_type(client: TestClient, make_image) -> None:
    response = _upload(client, "menu-item", make_image("JPEG", (100, 100)), "application/pdf")

    assert response.status_code == 415


def test_oversized_upload(local_backend, staging_root, make_image) -> None:
    pipeline = ImagePipeline(
        StorageResolver([local_backend]),
        registry=ProfileRegistry({"logo": {"max_upload_bytes": 1024}}),
        staging_root=staging_root,
        encode_workers=1,
        io_workers=1,
    )
    try:
        response = _upload(_client(pipeline), "logo", make_image("PNG", (200, 200)), "image/png")
    finally:
        app.dependency_overrides.clear()
        pipeline.shutdown()

    assert response.status_code == 413
    assert "exceeds maximum allowed size" in response.json()["detail"]
    assert not any(staging_root.iterdir())


def test_empty_upload(client: TestClient) -> None:
    assert _upload(client, "menu-item", b"").status_code == 400


def test_tiff_with_image_mime_is_rejected(client: TestClient, make_image, staging_root) -> None:
    response = _upload(client, "menu-item", make_image("TIFF", (200, 200)), "image/jpeg")

    assert response.status_code == 400
    assert not any(staging_root.iterdir())


def test_unknown_category(client: TestClient, make_image) -> None:
    assert _upload(client, "poster", make_image("JPEG", (100, 100))).status_code == 404


def test_delete_is_idempotent(client: TestClient, make_image, local_backend) -> None:
    body = _upload(client, "menu-item", make_image("JPEG", (800, 600))).json()
    filename = body["key"].split("/", 1)[1]

    first = client.delete(f"/api/images/local/menu-item/{filename}")
    second = client.delete(f"/api/images/local/menu-item/{filename}")

    assert first.status_code == 204
    assert second.status_code == 204
    assert not local_backend.exists(body["key"])


def test_delete_rejects_hidden_files(client: TestClient) -> None:
    assert client.delete("/api/images/local/menu-item/.secret.part").status_code == 400


def test_delete_on_unconfigured_backend(client: TestClient) -> None:
    assert client.delete("/api/images/remote/menu-item/a.jpg").status_code == 503


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "backends": {"local": True}}
