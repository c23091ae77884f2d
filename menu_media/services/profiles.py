"""Static size/quality profiles per asset category.

Profiles are read-only once the registry is built. Optional per-category
overrides (``PROFILE_OVERRIDES``) are merged and validated up front so a bad
override fails at startup rather than on the first upload.
"""
from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping

from pydantic import ValidationError

from menu_media.exceptions import ProfileConfigError
from menu_media.models import AssetCategory, CompressionProfile, FitMode

logger = logging.getLogger(__name__)

_MB = 1024 * 1024

DEFAULT_PROFILES: dict[AssetCategory, CompressionProfile] = {
    AssetCategory.MENU_ITEM: CompressionProfile(
        category=AssetCategory.MENU_ITEM,
        target_width=600,
        target_height=400,
        fit_mode=FitMode.COVER,
        initial_quality=80,
        min_size_kb=70,
        max_size_kb=150,
        max_upload_bytes=3 * _MB,
    ),
    AssetCategory.BANNER: CompressionProfile(
        category=AssetCategory.BANNER,
        target_width=1200,
        target_height=400,
        fit_mode=FitMode.COVER,
        initial_quality=80,
        min_size_kb=100,
        max_size_kb=200,
        max_upload_bytes=3 * _MB,
    ),
    AssetCategory.LOGO: CompressionProfile(
        category=AssetCategory.LOGO,
        target_width=400,
        target_height=400,
        fit_mode=FitMode.CONTAIN,
        initial_quality=85,
        min_size_kb=60,
        max_size_kb=100,
        max_upload_bytes=2 * _MB,
    ),
}


def _coerce_category(category: AssetCategory | str) -> AssetCategory:
    try:
        return AssetCategory(category)
    except ValueError as exc:
        raise ProfileConfigError(f"Unknown asset category: {category!r}") from exc


class ProfileRegistry:
    """Lookup table from asset category to compression profile."""

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        profiles = dict(DEFAULT_PROFILES)
        for raw_category, fields in (overrides or {}).items():
            category = _coerce_category(raw_category)
            if "category" in fields:
                raise ProfileConfigError("Profile overrides cannot change the category")
            merged = {**profiles[category].model_dump(), **fields}
            try:
                profiles[category] = CompressionProfile.model_validate(merged)
            except ValidationError as exc:
                raise ProfileConfigError(f"Invalid override for {category.value}: {exc}") from exc
            logger.info("Profile override applied for %s: %s", category.value, sorted(fields))
        self._profiles = profiles

    def get(self, category: AssetCategory | str) -> CompressionProfile:
        return self._profiles[_coerce_category(category)]

    def categories(self) -> list[AssetCategory]:
        return list(self._profiles)

    def __iter__(self) -> Iterator[CompressionProfile]:
        return iter(self._profiles.values())

    def __contains__(self, category: object) -> bool:
        try:
            return _coerce_category(category) in self._profiles  # type: ignore[arg-type]
        except ProfileConfigError:
            return False
