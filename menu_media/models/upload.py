from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AssetCategory(str, Enum):
    """Kind of asset being uploaded; selects the compression profile."""

    MENU_ITEM = "menu-item"
    BANNER = "banner"
    LOGO = "logo"


class UploadRequest(BaseModel):
    """Raw upload as handed over by the upload gateway."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., repr=False)
    content_type: str
    declared_size: int = Field(..., ge=0)
    user_id: str
    restaurant_id: int | None = None
    category: AssetCategory
