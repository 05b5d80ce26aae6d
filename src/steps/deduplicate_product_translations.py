# =========================================
# 📄 File: src/steps/deduplicate_product_translations.py
# Purpose: Make product translation slugs unique per language
# The first translation of each (language_id, slug) group keeps its slug; the
# others get "-" plus 8 random lowercase alphanumerics appended.
# =========================================

import logging
import random
import string
from typing import Any, Dict, List

from src.pipeline.stage import Stage, stage_result

log = logging.getLogger(__name__)

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 8

DUPLICATE_SLUGS_SQL = """
    SELECT
        language_id,
        slug,
        COUNT(*) AS count,
        ARRAY_AGG(id ORDER BY created_at, id) AS translation_ids,
        ARRAY_AGG(product_id ORDER BY created_at, id) AS product_ids
    FROM product_translations
    GROUP BY language_id, slug
    HAVING COUNT(*) > 1
    ORDER BY language_id, slug
"""


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(random.choices(SUFFIX_ALPHABET, k=length))  # nosec B311


def expand_duplicates(groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Every translation after the first of its group, flattened."""
    duplicates = []
    for group in groups:
        ids = list(group["translation_ids"] or [])
        product_ids = list(group["product_ids"] or [])
        for position in range(1, len(ids)):
            duplicates.append({
                "id": ids[position],
                "product_id": product_ids[position] if position < len(product_ids) else None,
                "language_id": group["language_id"],
                "slug": group["slug"],
            })
        log.debug(
            f"Language {group['language_id']}, slug '{group['slug']}': "
            f"{len(ids)} records, {len(ids) - 1} to rename"
        )
    return duplicates


class DeduplicateProductTranslationsStep(Stage):
    name = "deduplicate_product_translations"
    description = "Suffix duplicate product translation slugs"

    def run(self) -> Dict[str, Any]:
        log.info("Starting deduplicate product translations step...")
        groups = self.target_db.query(DUPLICATE_SLUGS_SQL)
        if not groups:
            log.info("No duplicate slugs found")
            return stage_result(count=0, duplicates_found=0)

        duplicates = expand_duplicates(groups)
        log.info(f"Found {len(groups)} duplicate slug groups, {len(duplicates)} translations to rename")

        result = self.batch_processor().process(duplicates, lambda batch, idx: self.process_batch(batch))
        log.info(
            f"✅ Deduplicate product translations completed: {result['success']} success, {result['failed']} failed"
        )
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"],
            duplicates_found=len(duplicates),
        )

    def process_batch(self, batch: List[Dict[str, Any]]) -> Dict[str, int]:
        for duplicate in batch:
            new_slug = f"{duplicate['slug']}-{random_suffix()}"
            self.target_db.execute(
                "UPDATE product_translations SET slug = :slug, updated_at = NOW() WHERE id = :id",
                {"slug": new_slug, "id": duplicate["id"]},
            )
            log.debug(f"Translation {duplicate['id']} (product {duplicate['product_id']}): {duplicate['slug']} -> {new_slug}")
        return {"success": len(batch), "failed": 0}
