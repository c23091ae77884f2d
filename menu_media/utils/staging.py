"""Scoped temporary files for raw uploads.

Every staged file gets a uuid4 name, so concurrent uploads never collide and
the staging directory needs no locking.
"""
from __future__ import annotations

import uuid
from pathlib import Path


def new_staging_path(staging_root: str | Path, suffix: str = ".upload") -> Path:
    root = Path(staging_root)
    root.mkdir(parents=True, exist_ok=True)
    return root / f"{uuid.uuid4().hex}{suffix}"
