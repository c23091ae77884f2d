"""Tiered storage for processed images.

Persistence is an ordered list of backends sharing one contract
(``save(data, key, content_type, metadata) -> url``). The resolver walks the
list and stops at the first success, so a Cloud Storage outage degrades
uploads to local disk instead of rejecting them. Transient Cloud Storage
errors are retried with the client library's retry policy first. Objects are
stored under the key pattern:

    {category}/{uuid}.{ext}

Remote URLs are stable public URLs by default (the object's public URL, or
one under a configured CDN base); signed URLs are an explicit opt-in. Local
URLs are ``/uploads/{category}/{filename}``. The owner of each upload is
recorded as object metadata on the remote tier.
"""
from __future__ import annotations

import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Sequence

from google.api_core.exceptions import NotFound
from google.api_core.retry import Retry
from google.cloud import storage
from google.cloud.storage.retry import DEFAULT_RETRY

from menu_media.config import Settings
from menu_media.exceptions import StorageError
from menu_media.models import AssetCategory, Backend, CompressionResult, StoredAsset

logger = logging.getLogger(__name__)


class RemoteVerificationError(Exception):
    """Raised when an uploaded object cannot be read back as written."""

    def __init__(self, key: str, expected: int, actual: int | None):
        super().__init__(f"Verification failed for {key}: expected {expected} bytes, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


def build_key(category: AssetCategory | str, extension: str) -> str:
    return f"{AssetCategory(category).value}/{uuid.uuid4().hex}.{extension}"


class StorageBackend(ABC):
    """A persistence target for final image bytes."""

    name: Backend

    @abstractmethod
    def save(
        self, data: bytes, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        """Persist *data* under *key* and return its access URL."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*. Deleting a missing object is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    def location(self, key: str) -> str | None:
        """Backend-specific location of *key* when it is meaningful to callers."""
        return None

    def check(self) -> bool:
        """Return True if the backend looks usable."""
        return True


# ---------------------------------------------------------------------------
# Google Cloud Storage
# ---------------------------------------------------------------------------


class GCSBackend(StorageBackend):
    """Wrapper around Google Cloud Storage uploads and public/signed URLs."""

    name = Backend.REMOTE

    def __init__(
        self,
        bucket_name: str,
        *,
        project: str | None = None,
        credentials_path: str | None = None,
        public: bool = True,
        public_base_url: str | None = None,
        signed_url_expiry: timedelta = timedelta(days=7),
        retry: Retry = DEFAULT_RETRY,
        client: storage.Client | None = None,
    ) -> None:
        self._bucket_name = bucket_name
        self._project = project
        self._credentials_path = credentials_path
        self._public = public
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._expiry = signed_url_expiry
        self._retry = retry
        self._client = client
        self._bucket: storage.Bucket | None = None

    @property
    def public(self) -> bool:
        return self._public

    @property
    def bucket(self) -> storage.Bucket:
        # Created lazily so missing credentials surface as a failed attempt
        # (and a local fallback) rather than an import-time crash.
        if self._bucket is None:
            if self._client is None:
                self._client = self._make_client()
            self._bucket = self._client.bucket(self._bucket_name)
        return self._bucket

    def _make_client(self) -> storage.Client:
        if self._credentials_path:
            return storage.Client.from_service_account_json(self._credentials_path, project=self._project)
        return storage.Client(project=self._project)

    # ------------------------------------------------------------------
    # StorageBackend
    # ------------------------------------------------------------------

    def save(
        self, data: bytes, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        blob = self.bucket.blob(key)
        if metadata:
            blob.metadata = dict(metadata)
        try:
            # if_generation_match=0 only ever creates the object, so a retried
            # upload cannot overwrite anything.
            self._retry(blob.upload_from_string)(
                data, content_type=content_type, if_generation_match=0, retry=None
            )
            self._verify(blob, len(data))
            url = self._url_for(blob)
        except Exception:
            # Never leave an object behind that nobody holds a URL for.
            self._discard(blob)
            raise
        logger.debug("Uploaded image to gs://%s/%s", self._bucket_name, key)
        return url

    def delete(self, key: str) -> None:
        try:
            self._retry(self.bucket.blob(key).delete)(retry=None)
            logger.debug("Deleted image blob %s", key)
        except NotFound:
            logger.debug("Image blob %s already gone", key)

    def exists(self, key: str) -> bool:
        return self.bucket.blob(key).exists()

    def location(self, key: str) -> str | None:
        return f"gs://{self._bucket_name}/{key}"

    def check(self) -> bool:
        try:
            return bool(self.bucket.exists())
        except Exception as exc:  # pragma: no cover
            logger.warning("GCS bucket '%s' is not reachable: %s", self._bucket_name, exc)
            return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _verify(self, blob: storage.Blob, expected: int) -> None:
        """Re-read object metadata (a HEAD-style GET) and compare sizes."""

        try:
            self._retry(blob.reload)(retry=None)
        except NotFound as exc:
            raise RemoteVerificationError(blob.name, expected, None) from exc
        if blob.size != expected:
            raise RemoteVerificationError(blob.name, expected, blob.size)

    def _url_for(self, blob: storage.Blob) -> str:
        if self._public_base_url:
            # Bucket (or CDN) is public as a whole.
            return f"{self._public_base_url}/{blob.name}"
        if self._public:
            # A failure here propagates: the object is discarded and the
            # next backend is tried, never a short-lived URL.
            blob.make_public()
            return blob.public_url
        return blob.generate_signed_url(expiration=self._expiry, version="v4")

    def _discard(self, blob: storage.Blob) -> None:
        try:
            blob.delete()
        except NotFound:
            pass
        except Exception as exc:  # pragma: no cover
            logger.error("Could not remove unverified blob %s; it is now orphaned: %s", blob.name, exc)


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalBackend(StorageBackend):
    """Writes assets below a root directory served at *url_prefix*."""

    name = Backend.LOCAL

    def __init__(self, root: str | Path, url_prefix: str = "/uploads") -> None:
        self._root = Path(root)
        self._url_prefix = url_prefix.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        parts = Path(key).parts
        if not parts or Path(key).is_absolute() or ".." in parts:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._root.joinpath(*parts)

    def save(
        self, data: bytes, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        # Ownership of local files is carried by the StoredAsset only.
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            partial.write_bytes(data)
            os.replace(partial, target)
        finally:
            partial.unlink(missing_ok=True)
        logger.debug("Stored image locally at %s (%s)", target, content_type)
        return f"{self._url_prefix}/{key}"

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def location(self, key: str) -> str | None:
        return str(self.path_for(key))

    def check(self) -> bool:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Local storage root %s is not writable: %s", self._root, exc)
            return False
        return os.access(self._root, os.W_OK)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


def owner_metadata(
    category: AssetCategory, user_id: str | None, restaurant_id: int | None
) -> dict[str, str]:
    """Object metadata tagging an upload with its category and owner."""

    metadata = {"category": category.value}
    if user_id is not None:
        metadata["user_id"] = user_id
    if restaurant_id is not None:
        metadata["restaurant_id"] = str(restaurant_id)
    return metadata


class StorageResolver:
    """Persists processed images through an ordered chain of backends."""

    def __init__(self, backends: Sequence[StorageBackend]) -> None:
        if not backends:
            raise ValueError("At least one storage backend is required")
        self._backends = list(backends)
        self._by_name = {backend.name: backend for backend in self._backends}

    @property
    def backends(self) -> list[StorageBackend]:
        return list(self._backends)

    def persist(
        self,
        result: CompressionResult,
        category: AssetCategory | str,
        *,
        user_id: str | None = None,
        restaurant_id: int | None = None,
    ) -> StoredAsset:
        category = AssetCategory(category)
        key = build_key(category, result.extension)
        metadata = owner_metadata(category, user_id, restaurant_id)
        failures: list[tuple[str, str]] = []

        for backend in self._backends:
            try:
                url = backend.save(result.data, key, result.content_type, metadata)
            except Exception as exc:
                failures.append((backend.name.value, str(exc)))
                logger.warning("%s storage failed for %s: %s", backend.name.value, key, exc)
                continue

            asset = StoredAsset(
                url=url,
                backend=backend.name,
                key=key,
                path=backend.location(key) if backend.name is Backend.LOCAL else None,
                content_type=result.content_type,
                size=result.size,
                width=result.width,
                height=result.height,
                best_effort=result.best_effort,
                user_id=user_id,
                restaurant_id=restaurant_id,
            )
            logger.info("Persisted %s via %s backend (%d bytes)", key, backend.name.value, result.size)
            return asset

        logger.error("All storage backends failed for %s: %s", key, failures)
        raise StorageError("Image storage is unavailable", failures=failures)

    def delete(self, asset: StoredAsset) -> None:
        """Delete *asset* from the backend it was persisted on (idempotent)."""

        self.delete_key(asset.backend, asset.key)

    def delete_key(self, backend_name: Backend | str, key: str) -> None:
        name = Backend(backend_name)
        backend = self._by_name.get(name)
        if backend is None:
            raise StorageError(f"The {name.value} backend is not configured; cannot delete {key}")
        try:
            backend.delete(key)
        except Exception as exc:
            logger.error("Failed to delete %s from %s backend: %s", key, name.value, exc)
            raise StorageError(f"Could not delete {key}") from exc
        logger.info("Deleted %s from %s backend", key, name.value)

    def check_backends(self) -> dict[str, bool]:
        return {backend.name.value: backend.check() for backend in self._backends}


def build_resolver(settings: Settings) -> StorageResolver:
    """Assemble the backend chain; the remote tier exists only when a bucket is configured."""

    backends: list[StorageBackend] = []
    if settings.remote_enabled:
        backends.append(
            GCSBackend(
                settings.bucket_name,  # type: ignore[arg-type]
                project=settings.project_id,
                credentials_path=settings.google_application_credentials,
                public=settings.public_images,
                public_base_url=settings.public_base_url,
                signed_url_expiry=timedelta(days=settings.signed_url_expiry_days),
                retry=DEFAULT_RETRY.with_timeout(settings.remote_retry_timeout_seconds),
            )
        )
    else:
        logger.info("BUCKET_NAME not set; images will be stored locally only.")
    backends.append(LocalBackend(settings.local_storage_root, settings.local_url_prefix))
    return StorageResolver(backends)
