from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .upload import AssetCategory


class FitMode(str, Enum):
    COVER = "cover"  # crop to fill the target box
    CONTAIN = "contain"  # fit inside the box, no crop, no upscale


class CompressionProfile(BaseModel):
    """Sizing and target-band configuration for one asset category."""

    model_config = ConfigDict(frozen=True)

    category: AssetCategory
    target_width: int = Field(..., ge=1)
    target_height: int = Field(..., ge=1)
    fit_mode: FitMode
    initial_quality: int = Field(..., ge=1, le=100)
    min_size_kb: float = Field(..., ge=0)
    max_size_kb: float = Field(..., gt=0)
    max_iterations: int = Field(15, ge=1)
    max_upload_bytes: int = Field(3 * 1024 * 1024, ge=1)

    @model_validator(mode="after")
    def _check_band(self) -> "CompressionProfile":
        if self.min_size_kb > self.max_size_kb:
            raise ValueError(
                f"min_size_kb ({self.min_size_kb}) exceeds max_size_kb ({self.max_size_kb})"
            )
        return self

    @property
    def target_size(self) -> tuple[int, int]:
        return self.target_width, self.target_height

    def in_band(self, size_bytes: int) -> bool:
        size_kb = size_bytes / 1024
        return self.min_size_kb <= size_kb <= self.max_size_kb
