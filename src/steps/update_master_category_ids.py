# =========================================
# 📄 File: src/steps/update_master_category_ids.py
# Purpose: Repair products.master_category_id after merges
# Targets products whose master category is NULL or no longer exists; the first
# product_categories link (by created_at) becomes the master.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Stage, stage_result

log = logging.getLogger(__name__)

BROKEN_MASTER_SQL = """
    SELECT p.id
    FROM products p
    LEFT JOIN categories c ON c.id = p.master_category_id
    WHERE p.master_category_id IS NULL OR c.id IS NULL
    ORDER BY p.id
"""

FIRST_LINK_SQL = """
    SELECT DISTINCT ON (pc.product_id) pc.product_id, pc.category_id
    FROM product_categories pc
    JOIN categories c ON c.id = pc.category_id
    WHERE pc.product_id IN :ids
    ORDER BY pc.product_id, pc.created_at ASC, pc.category_id
"""


class UpdateMasterCategoryIdsStep(Stage):
    name = "update_master_category_ids"
    description = "Fix master_category_id after merge"

    def run(self) -> Dict[str, Any]:
        product_ids = [r["id"] for r in self.target_db.query(BROKEN_MASTER_SQL)]
        if not product_ids:
            log.info("All products have a valid master category")
            return stage_result(count=0)
        log.info(f"Found {len(product_ids)} products without a valid master category")

        result = self.batch_processor().process(product_ids, lambda batch, idx: self.update_batch(batch))
        log.info(f"✅ Update master category ids completed: {result['success']} success, {result['failed']} failed")
        return stage_result(success=result["failed"] == 0, count=result["success"], failed=result["failed"])

    def update_batch(self, product_ids: List[Any]) -> Dict[str, int]:
        links = self.target_db.query(FIRST_LINK_SQL, {"ids": list(product_ids)}, expanding=["ids"])
        for link in links:
            self.target_db.execute(
                "UPDATE products SET master_category_id = :category_id, updated_at = NOW() WHERE id = :id",
                {"category_id": link["category_id"], "id": link["product_id"]},
            )
        unlinked = len(product_ids) - len(links)
        if unlinked:
            log.debug(f"{unlinked} products have no category link; master category stays empty")
        return {"success": len(product_ids), "failed": 0}
