from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from a .env file if present (local dev only)
load_dotenv()


class Settings(BaseSettings):
    """Application configuration loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # General
    project_id: Optional[str] = Field(default=None, description="GCP project ID")
    log_level: str = Field("INFO", description="Root log level.")

    # Cloud Storage (remote backend). Leaving BUCKET_NAME unset disables it.
    bucket_name: Optional[str] = Field(default=None, description="GCS bucket for processed images.")
    google_application_credentials: Optional[str] = Field(
        default=None,
        description="Path to a service-account JSON file. Falls back to default credentials.",
    )
    public_images: bool = Field(True, description="Serve remote images from stable public URLs. Set false to issue signed URLs instead.")
    public_base_url: Optional[str] = Field(
        default=None,
        description="Public or CDN base URL of the bucket. When set, objects are not made public individually.",
    )
    signed_url_expiry_days: int = Field(7, ge=1, le=7, description="Signed URL lifetime when public_images is false (GCS caps this at 7 days).")
    remote_retry_timeout_seconds: float = Field(10.0, gt=0, description="Total time spent retrying transient GCS errors per call.")

    # Local storage (fallback backend)
    local_storage_root: str = Field("uploads", description="Directory holding locally persisted assets.")
    local_url_prefix: str = Field("/uploads", description="URL path under which local assets are served.")
    staging_root: str = Field("tmp/staging", description="Directory for raw uploads awaiting processing.")

    # Pipeline
    pipeline_timeout_seconds: float = Field(30.0, gt=0, description="Wall-clock budget from decode to final encode.")
    encode_workers: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    io_workers: int = Field(8, ge=1)
    profile_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description='Per-category profile overrides, e.g. {"logo": {"max_size_kb": 120}}.',
    )

    @property
    def remote_enabled(self) -> bool:
        return bool(self.bucket_name)


@lru_cache()
def get_settings() -> Settings:  # pragma: no cover
    """Return a cached Settings instance so it is only parsed once."""

    return Settings()
