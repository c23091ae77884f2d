#!/usr/bin/env python
"""Run a local image through the compression pipeline."""
from __future__ import annotations

import argparse
import json
import shutil
import sys
from pathlib import Path

from menu_media.config import get_settings
from menu_media.exceptions import ImagePipelineError
from menu_media.models import AssetCategory
from menu_media.services.gateway import check_size
from menu_media.services.pipeline import build_pipeline
from menu_media.utils.staging import new_staging_path


def main() -> int:
    parser = argparse.ArgumentParser(description="Compress an image the way uploads are compressed")
    parser.add_argument("path", type=Path)
    parser.add_argument("--category", choices=[c.value for c in AssetCategory], default=AssetCategory.MENU_ITEM.value)
    parser.add_argument("--output", type=Path, help="Write the compressed bytes here")
    parser.add_argument("--persist", action="store_true", help="Store through the configured backends")
    parser.add_argument("--user_id", default="cli")
    parser.add_argument("--restaurant_id", type=int)
    args = parser.parse_args()

    settings = get_settings()
    with build_pipeline(settings) as pipeline:
        profile = pipeline.registry.get(args.category)
        try:
            check_size(args.path.stat().st_size, profile)
            if args.persist:
                # process_file consumes its input, so hand it a staged copy.
                staged = new_staging_path(pipeline.staging_root)
                shutil.copyfile(args.path, staged)
                asset = pipeline.process_file(
                    staged,
                    category=profile.category,
                    content_type="application/octet-stream",
                    user_id=args.user_id,
                    restaurant_id=args.restaurant_id,
                )
                print(asset.model_dump_json(indent=2))
                return 0

            result = pipeline.compress(args.path.read_bytes(), profile.category)
        except ImagePipelineError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return 1

    if args.output:
        args.output.write_bytes(result.data)
    summary = result.model_dump(mode="json", exclude={"data", "attempts"})
    summary["size_kb"] = round(result.size_kb, 1)
    summary["compression_ratio"] = round(result.compression_ratio, 3)
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
