# =========================================
# 📄 File: src/steps/cert_coin_categories.py
# Purpose: Map certified coins onto categories from a curated CSV
#   columns: cert-number, coin-number, main-category, sub-category-1,
#            main-category-2, sub-category-2 (category slugs)
# A product is matched by product_identity LIKE %cert-number%; every listed
# category is linked and the last one found becomes the master category.
# =========================================

import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from src.pipeline.stage import Counters, Stage, stage_result

log = logging.getLogger(__name__)

DEFAULT_CSV_PATH = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "..", "..", "config", "cert_coin_categories.csv"
)

CATEGORY_COLUMNS = ["main-category", "sub-category-1", "main-category-2", "sub-category-2"]

PRODUCT_BY_CERT_SQL = """
    SELECT id, product_web_sku, master_category_id
    FROM products
    WHERE product_identity LIKE :pattern
    LIMIT 1
"""

CATEGORY_BY_SLUG_SQL = """
    SELECT c.id
    FROM categories c
    JOIN category_translations ct ON c.id = ct.category_id
    WHERE (ct.slug = :slug OR ct.parent_slugs = :slug) AND ct.language_id = :language_id
    LIMIT 1
"""


def load_cert_rows(path: str) -> List[Dict[str, str]]:
    """CSV rows as string dicts; blank cells come back as ''."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [c.strip() for c in df.columns]
    return [{k: (v or "").strip() for k, v in row.items()} for row in df.to_dict(orient="records")]


def group_by_cert_coin(rows: List[Dict[str, str]]) -> Dict[Tuple[str, str], List[Dict[str, str]]]:
    groups: Dict[Tuple[str, str], List[Dict[str, str]]] = {}
    for row in rows:
        groups.setdefault((row.get("cert-number", ""), row.get("coin-number", "")), []).append(row)
    return groups


class CertCoinCategoriesStep(Stage):
    name = "cert_coin_categories"
    description = "Category links for certified coins from cert_coin_categories.csv"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._category_cache: Dict[str, Optional[Any]] = {}
        self._lock = threading.Lock()
        self.counters = Counters("mapped", "products_updated", "category_links", "missing_products")

    def run(self) -> Dict[str, Any]:
        log.info("Starting cert coin categories mapping step...")
        path = self.settings.get("csv_path") or DEFAULT_CSV_PATH
        if not os.path.exists(path):
            log.warning(f"Cert coin CSV not found at {path}; nothing to map")
            return stage_result(count=0)

        rows = load_cert_rows(path)
        if not rows:
            log.warning("No CSV data found to process")
            return stage_result(count=0)
        log.info(f"Loaded {len(rows)} certification records from {path}")

        self.language_id = self.require_default_language()
        groups = list(group_by_cert_coin(rows).items())
        log.info(f"Processing {len(groups)} unique cert-coin combinations")

        result = self.batch_processor().process(groups, lambda batch, idx: self.process_batch(batch))
        stats = self.counters.as_dict()
        mapped = stats.pop("mapped")
        log.info(
            f"✅ Cert coin categories mapping completed: {mapped} rows mapped, "
            f"{stats['products_updated']} products updated, {result['failed']} combinations failed"
        )
        # count is CSV rows mapped; failed is cert-coin combinations that could not be written
        return stage_result(success=result["failed"] == 0, count=mapped, failed=result["failed"], **stats)

    def process_batch(self, batch: List[Tuple[Tuple[str, str], List[Dict[str, str]]]]) -> Dict[str, int]:
        mapped, updated, missing, links = 0, 0, 0, 0
        for (cert_number, coin_number), rows in batch:
            # An empty pattern would match every product
            if not cert_number:
                log.warning(f"Skipping {len(rows)} CSV rows without a cert-number")
                continue
            found = self.target_db.query(PRODUCT_BY_CERT_SQL, {"pattern": f"%{cert_number}%"})
            if not found:
                log.debug(f"Product not found for cert-number {cert_number}, coin-number {coin_number}")
                missing += 1
                continue
            product = found[0]
            with self.target_db.transaction():
                links += sum(self.map_row(product, row) for row in rows)
            mapped += len(rows)
            updated += 1
        # Tallied once the whole batch went through, so a retried batch is not counted twice
        self.counters.add(mapped=mapped, products_updated=updated, category_links=links, missing_products=missing)
        return {"success": len(batch), "failed": 0}

    def map_row(self, product: Dict[str, Any], row: Dict[str, str]) -> int:
        """Links the row's categories and returns how many links were new."""
        category_ids = []
        for slug in (row.get(col) for col in CATEGORY_COLUMNS):
            if not slug:
                continue
            category_id = self.category_id_for(slug)
            if category_id is None:
                log.warning(f"Category not found for slug {slug} (product {product['id']})")
                continue
            category_ids.append(category_id)
        if not category_ids:
            log.warning(f"No valid categories found for product {product['id']}")
            return 0

        # Deepest listed category first; it becomes the master
        category_ids.reverse()
        now = datetime.now(timezone.utc)
        links = [
            {"id": str(uuid.uuid4()), "product_id": product["id"], "category_id": category_id, "created_at": now, "updated_at": now}
            for category_id in category_ids
        ]
        written = self.target_db.insert_ignore("product_categories", links, conflict_cols=["product_id", "category_id"])
        self.target_db.execute(
            """
            UPDATE products
            SET master_category_id = :category_id, cert_number = :cert_number, coin_number = :coin_number,
                updated_at = NOW()
            WHERE id = :id
            """,
            {
                "category_id": category_ids[0],
                "cert_number": row.get("cert-number"),
                "coin_number": row.get("coin-number") or None,
                "id": product["id"],
            },
        )
        return written

    def category_id_for(self, slug: str) -> Optional[Any]:
        with self._lock:
            if slug in self._category_cache:
                return self._category_cache[slug]
        found = self.target_db.query(CATEGORY_BY_SLUG_SQL, {"slug": slug, "language_id": self.language_id})
        category_id = found[0]["id"] if found else None
        with self._lock:
            self._category_cache[slug] = category_id
        return category_id
