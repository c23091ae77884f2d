"""End-to-end image ingestion: decode -> normalise -> compress -> persist.

Steps run strictly in sequence for one upload. Encoding is CPU bound and
runs on a pool sized to the available cores; storage writes are I/O bound
and get their own pool. A wall-clock budget covers decode through the final
encode. Staged input files are owned by :meth:`ImagePipeline.process_file`
and removed on every exit path.
"""
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from functools import lru_cache
from pathlib import Path

from menu_media.config import Settings, get_settings
from menu_media.exceptions import PipelineTimeoutError
from menu_media.models import (
    AssetCategory,
    Backend,
    CompressionResult,
    StoredAsset,
    UploadRequest,
)

from .compressor import CompressionController
from .profiles import ProfileRegistry
from .storage import StorageResolver, build_resolver

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ImagePipeline:
    """Runs uploads through compression and the storage fallback chain."""

    def __init__(
        self,
        resolver: StorageResolver,
        *,
        registry: ProfileRegistry | None = None,
        controller: CompressionController | None = None,
        staging_root: str | Path = "tmp/staging",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        encode_workers: int | None = None,
        io_workers: int = 8,
    ) -> None:
        self._resolver = resolver
        self._registry = registry or ProfileRegistry()
        self._controller = controller or CompressionController()
        self._staging_root = Path(staging_root)
        self._timeout = timeout
        self._encode_pool = ThreadPoolExecutor(
            max_workers=encode_workers or os.cpu_count() or 1,
            thread_name_prefix="image-encode",
        )
        self._io_pool = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix="image-storage")

    @property
    def registry(self) -> ProfileRegistry:
        return self._registry

    @property
    def resolver(self) -> StorageResolver:
        return self._resolver

    @property
    def staging_root(self) -> Path:
        return self._staging_root

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compress(self, data: bytes, category: AssetCategory | str) -> CompressionResult:
        """Decode and compress *data* for *category* within the time budget."""

        profile = self._registry.get(category)
        deadline = time.monotonic() + self._timeout
        future = self._encode_pool.submit(
            self._controller.compress_bytes, data, profile, deadline=deadline
        )
        try:
            return future.result(timeout=self._timeout)
        except PipelineTimeoutError:
            logger.warning("Compression of %s upload ran past %.0fs", profile.category.value, self._timeout)
            raise
        except FuturesTimeoutError as exc:
            # The worker notices the deadline at its next iteration and exits.
            future.cancel()
            logger.warning("Compression of %s upload timed out after %.0fs", profile.category.value, self._timeout)
            raise PipelineTimeoutError(f"Image processing exceeded {self._timeout:.0f} seconds") from exc

    def process(self, request: UploadRequest) -> StoredAsset:
        started = time.monotonic()
        result = self.compress(request.data, request.category)
        asset = self._io_pool.submit(
            self._resolver.persist,
            result,
            request.category,
            user_id=request.user_id,
            restaurant_id=request.restaurant_id,
        ).result()
        logger.info(
            "Processed %s upload for user %s: %.1fKB -> %.1fKB, quality %d, %dx%d, %d iteration(s)%s, %s in %.2fs",
            request.category.value,
            request.user_id,
            request.declared_size / 1024,
            result.size_kb,
            result.quality,
            result.width,
            result.height,
            result.iterations,
            " (best effort)" if result.best_effort else "",
            asset.state.value,
            time.monotonic() - started,
        )
        return asset

    def process_file(
        self,
        path: str | Path,
        *,
        category: AssetCategory | str,
        content_type: str,
        user_id: str,
        restaurant_id: int | None = None,
    ) -> StoredAsset:
        """Process a staged upload. The file is deleted whatever the outcome."""

        path = Path(path)
        try:
            profile = self._registry.get(category)
            data = path.read_bytes()
            request = UploadRequest(
                data=data,
                content_type=content_type,
                declared_size=len(data),
                user_id=user_id,
                restaurant_id=restaurant_id,
                category=profile.category,
            )
            return self.process(request)
        finally:
            path.unlink(missing_ok=True)

    def delete(self, asset: StoredAsset) -> None:
        self._io_pool.submit(self._resolver.delete, asset).result()

    def delete_key(self, backend: Backend | str, key: str) -> None:
        self._io_pool.submit(self._resolver.delete_key, backend, key).result()

    def shutdown(self, wait: bool = True) -> None:
        self._encode_pool.shutdown(wait=wait, cancel_futures=True)
        self._io_pool.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> "ImagePipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


def build_pipeline(settings: Settings) -> ImagePipeline:
    return ImagePipeline(
        build_resolver(settings),
        registry=ProfileRegistry(settings.profile_overrides),
        staging_root=settings.staging_root,
        timeout=settings.pipeline_timeout_seconds,
        encode_workers=settings.encode_workers,
        io_workers=settings.io_workers,
    )


@lru_cache()
def get_pipeline() -> ImagePipeline:
    return build_pipeline(get_settings())
