# =========================================
# 📄 File: src/steps/update_image_paths.py
# Purpose: Prefix relative product_images.image_url values with the CDN base
# =========================================

import logging
from typing import Any, Dict, List, Optional

from src.pipeline.stage import Stage, stage_result

log = logging.getLogger(__name__)


def prefixed_url(image_url: str, base: str) -> Optional[str]:
    """New URL, or None when the value already carries the base or is absolute."""
    if image_url.startswith(base) or image_url.startswith(("http://", "https://")):
        return None
    return f"{base}/{image_url.lstrip('/')}"


class UpdateImagePathsStep(Stage):
    name = "update_image_paths"
    description = "Prefix product image URLs with the CDN base"

    def run(self) -> Dict[str, Any]:
        base = (self.cfg.get("media", {}).get("cdn_base_url") or "").rstrip("/")
        if not base:
            log.warning("media.cdn_base_url is not set; skipping image path update")
            return stage_result(count=0)

        images = self.target_db.query(
            "SELECT id, image_url FROM product_images WHERE image_url IS NOT NULL AND image_url != '' ORDER BY id"
        )
        if not images:
            log.warning("No product images found to update")
            return stage_result(count=0)
        log.info(f"Checking {len(images)} product images against {base}")

        updated: List[int] = []

        def fn(batch, idx):
            count = 0
            for image in batch:
                new_url = prefixed_url(image["image_url"], base)
                if new_url is None:
                    continue
                count += self.target_db.execute(
                    "UPDATE product_images SET image_url = :url, updated_at = NOW() WHERE id = :id",
                    {"url": new_url, "id": image["id"]},
                )
            updated.append(count)
            return {"success": len(batch), "failed": 0}

        result = self.batch_processor().process(images, fn)
        log.info(f"✅ Update image paths completed: {sum(updated)} updated, {result['failed']} failed")
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"], updated=sum(updated)
        )
