# =========================================
# 📄 File: src/steps/update_products.py
# Purpose: Re-read source product state and refresh the mutable columns of migrated products
# Matched by product_web_sku; rows whose values did not change are left alone.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Counters, Stage, stage_result
from src.steps.product_source import fetch_source_products
from src.transform.records import SourceProduct

log = logging.getLogger(__name__)

REFRESH_COLS = ["is_active", "status", "price", "sold_date", "sold_price", "archived_at"]

UPDATE_SQL = """
    UPDATE products SET
        is_active = :is_active,
        status = :status,
        price = :price,
        sold_date = :sold_date,
        sold_price = :sold_price,
        archived_at = :archived_at,
        updated_at = NOW()
    WHERE product_web_sku = :product_web_sku
      AND (is_active IS DISTINCT FROM :is_active
           OR status IS DISTINCT FROM :status
           OR price IS DISTINCT FROM :price
           OR sold_date IS DISTINCT FROM :sold_date
           OR sold_price IS DISTINCT FROM :sold_price
           OR archived_at IS DISTINCT FROM :archived_at)
"""


class UpdateProductsStep(Stage):
    name = "update_products"
    description = "Refresh status, price and sold data on migrated products"

    def run(self) -> Dict[str, Any]:
        log.info("Starting products update step...")
        products = fetch_source_products(self.source_db, self.context.eav_mapper, self.cfg)
        if not products:
            log.warning("No source products found to update")
            return stage_result(count=0)

        counters = Counters("updated", "unchanged", "missing")
        result = self.batch_processor().process(products, lambda batch, idx: self.process_batch(batch, counters))

        stats = counters.as_dict()
        log.info(
            f"✅ Products update completed: {stats['updated']} updated, {stats['unchanged']} unchanged, "
            f"{stats['missing']} not in target, {result['failed']} failed"
        )
        return stage_result(success=result["failed"] == 0, count=result["success"], failed=result["failed"], **stats)

    def process_batch(self, batch: List[SourceProduct], counters: Counters) -> Dict[str, int]:
        valid = [p for p in batch if p.product_sku and p.created_at]
        transformer = self.context.transformer
        rows = [transformer.transform_product(p) for p in valid]

        known = self.context.resolver.product_ids_by_web_sku(r["product_web_sku"] for r in rows)
        for row in rows:
            if row["product_web_sku"] not in known:
                counters.add(missing=1)
                continue
            params = {col: row[col] for col in REFRESH_COLS}
            params["product_web_sku"] = row["product_web_sku"]
            if self.target_db.execute(UPDATE_SQL, params):
                counters.add(updated=1)
            else:
                counters.add(unchanged=1)
        return {"success": len(valid), "failed": len(batch) - len(valid)}
