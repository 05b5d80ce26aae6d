# =========================================
# 📄 File: src/steps/product_master_images_update.py
# Purpose: One master image per live product
# Master = first image by (position, created_at); its id lands in products.product_master_image_id.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Stage, stage_result

log = logging.getLogger(__name__)

PRODUCTS_WITH_IMAGES_SQL = """
    SELECT DISTINCT pi.product_id
    FROM product_images pi
    JOIN products p ON pi.product_id = p.id
    WHERE p.archived_at IS NULL
    ORDER BY pi.product_id
"""

MASTER_IMAGE_SQL = """
    SELECT id
    FROM product_images
    WHERE product_id = :product_id
    ORDER BY position ASC, created_at ASC
    LIMIT 1
"""


class ProductMasterImagesUpdateStep(Stage):
    name = "product_master_images_update"
    description = "Set master image per product"

    def run(self) -> Dict[str, Any]:
        product_ids = [r["product_id"] for r in self.target_db.query(PRODUCTS_WITH_IMAGES_SQL)]
        if not product_ids:
            log.warning("No products found with images to update")
            return stage_result(count=0)
        log.info(f"Updating master images for {len(product_ids)} products")

        result = self.batch_processor().process(product_ids, lambda batch, idx: self.update_batch(batch))
        log.info(f"✅ Product master images update completed: {result['success']} success, {result['failed']} failed")
        return stage_result(success=result["failed"] == 0, count=result["success"], failed=result["failed"])

    def update_batch(self, product_ids: List[Any]) -> Dict[str, int]:
        failed = 0
        for product_id in product_ids:
            rows = self.target_db.query(MASTER_IMAGE_SQL, {"product_id": product_id})
            if not rows:
                log.warning(f"Product {product_id}: no images found")
                failed += 1
                continue
            master_id = rows[0]["id"]
            # Only rows whose flag actually changes are touched
            self.target_db.execute(
                "UPDATE product_images SET is_master = (id = :master_id), updated_at = NOW() "
                "WHERE product_id = :product_id AND is_master IS DISTINCT FROM (id = :master_id)",
                {"master_id": master_id, "product_id": product_id},
            )
            self.target_db.execute(
                "UPDATE products SET product_master_image_id = :master_id, updated_at = NOW() "
                "WHERE id = :product_id AND product_master_image_id IS DISTINCT FROM :master_id",
                {"master_id": master_id, "product_id": product_id},
            )
        return {"success": len(product_ids) - failed, "failed": failed}
