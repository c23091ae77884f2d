from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Backend(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class PersistState(str, Enum):
    PERSISTED_REMOTE = "PersistedRemote"
    PERSISTED_LOCAL = "PersistedLocal"


class StoredAsset(BaseModel):
    """A processed image persisted on exactly one backend."""

    model_config = ConfigDict(frozen=True)

    url: str
    backend: Backend
    key: str  # "{category}/{uuid}.{ext}"
    path: str | None = None  # filesystem path, local backend only
    content_type: str
    size: int = Field(..., ge=0)
    width: int | None = None
    height: int | None = None
    best_effort: bool = False
    user_id: str | None = None
    restaurant_id: int | None = None

    @property
    def state(self) -> PersistState:
        if self.backend is Backend.REMOTE:
            return PersistState.PERSISTED_REMOTE
        return PersistState.PERSISTED_LOCAL
