"""Shared fixtures: generated images, fake encoders and local-only pipelines."""

from __future__ import annotations

import io
import random
from pathlib import Path
from typing import Callable

import pytest
from google.cloud.storage.retry import DEFAULT_RETRY
from PIL import Image

from menu_media.services.pipeline import ImagePipeline
from menu_media.services.storage import LocalBackend, StorageResolver

# Same retry predicate as production, with millisecond backoff.
FAST_RETRY = DEFAULT_RETRY.with_delay(initial=0.01, maximum=0.01).with_timeout(0.2)


def noise_image(size: tuple[int, int], mode: str = "RGB", seed: int = 7) -> Image.Image:
    channels = len(mode)
    rng = random.Random(seed)
    return Image.frombytes(mode, size, rng.randbytes(size[0] * size[1] * channels))


def encode(image: Image.Image, fmt: str, **params) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """Return a factory producing encoded images of a given format and size."""

    def _make(fmt: str = "JPEG", size: tuple[int, int] = (800, 600), *, noisy: bool = True, **params) -> bytes:
        if noisy:
            image = noise_image(size)
        else:
            image = Image.new("RGB", size, (200, 120, 40))
        return encode(image, fmt, **params)

    return _make


class SizedEncoder:
    """Fake encoder whose output length is a function of (quality, width, height)."""

    def __init__(self, size_fn: Callable[[int, int, int], int], failures: int = 0) -> None:
        self._size_fn = size_fn
        self._failures = failures
        self.calls: list[tuple[str, int, int, int]] = []

    def encode(self, image: Image.Image, fmt: str, quality: int) -> bytes:
        width, height = image.size
        self.calls.append((fmt, quality, width, height))
        if self._failures:
            self._failures -= 1
            raise OSError("encoder error -2")
        return b"\0" * self._size_fn(quality, width, height)


@pytest.fixture
def sized_encoder() -> type[SizedEncoder]:
    return SizedEncoder


@pytest.fixture
def local_backend(tmp_path: Path) -> LocalBackend:
    return LocalBackend(tmp_path / "uploads", "/uploads")


@pytest.fixture
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture
def pipeline(local_backend: LocalBackend, staging_root: Path):
    instance = ImagePipeline(
        StorageResolver([local_backend]),
        staging_root=staging_root,
        encode_workers=2,
        io_workers=2,
    )
    yield instance
    instance.shutdown()
