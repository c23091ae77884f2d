from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NormalizedImage(BaseModel):
    """Decoded source image plus the codec it will be re-encoded with."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    image: Any = Field(..., repr=False)  # PIL.Image.Image
    source_format: str
    output_format: str
    source_size: int = Field(..., ge=0)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


class EncodeAttempt(BaseModel):
    """One step of the compression search."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    quality: int
    width: int
    height: int
    size_bytes: int | None = None
    error: str | None = None

    @property
    def size_kb(self) -> float | None:
        return None if self.size_bytes is None else self.size_bytes / 1024


class CompressionResult(BaseModel):
    """Encoded output of the compression controller."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., repr=False)
    format: str
    content_type: str
    extension: str
    quality: int = Field(..., ge=1, le=100)
    width: int
    height: int
    iterations: int
    attempts: list[EncodeAttempt] = []
    best_effort: bool = False
    source_format: str
    source_size: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_kb(self) -> float:
        return len(self.data) / 1024

    @property
    def compression_ratio(self) -> float:
        """Fraction of the source size saved, 0.0 when unknown."""
        if not self.source_size:
            return 0.0
        return 1 - len(self.data) / self.source_size
