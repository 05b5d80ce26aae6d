# =========================================
# 📄 File: src/steps/categories.py
# Purpose: Stage 2 - category graph + default-language translations
# - Source: catalog_category_flat_store_1 (excluded ids filtered out)
# - Upsert categories ON CONFLICT(code), translations ON CONFLICT(category_id, language_id)
# - Link parents after all batches (source parent > 1 only)
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Stage, stage_result
from src.transform.records import SourceCategory

log = logging.getLogger(__name__)

CATEGORIES_SQL = """
    SELECT
        ccf.entity_id, ccf.parent_id, ccf.path, ccf.level, ccf.position,
        ccf.name, ccf.url_key, ccf.description, ccf.meta_title,
        ccf.meta_description, ccf.meta_keywords, ccf.is_active,
        ccf.created_at, ccf.updated_at
    FROM catalog_category_flat_store_1 ccf
    WHERE ccf.entity_id NOT IN :excluded
    ORDER BY ccf.level, ccf.position, ccf.entity_id
"""

CATEGORY_UPDATE_COLS = ["sort", "is_hidden"]
TRANSLATION_UPDATE_COLS = ["title", "description", "meta_title", "meta_description", "meta_keywords", "slug"]


class CategoriesStep(Stage):
    name = "categories"
    description = "Category hierarchy and translations"

    def run(self) -> Dict[str, Any]:
        log.info("Starting categories migration...")
        language_id = self.require_default_language()

        categories = self.fetch_source_categories()
        if not categories:
            log.warning("No categories found to migrate")
            return stage_result(count=0)
        log.info(f"Found {len(categories)} categories to migrate")

        result = self.batch_processor().process(
            categories, lambda batch, idx: self.process_batch(batch, language_id)
        )

        linked = self.update_parent_relationships()
        log.info(
            f"✅ Categories migration completed: {result['success']} success, "
            f"{result['failed']} failed, {linked} parent links updated"
        )
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"], parents_linked=linked
        )

    def fetch_source_categories(self) -> List[SourceCategory]:
        excluded = list(self.cfg["filters"]["excluded_category_ids"]) or [0]
        rows = self.source_db.query(CATEGORIES_SQL, {"excluded": excluded}, expanding=["excluded"])
        return [SourceCategory.from_row(r) for r in rows]

    def process_batch(self, batch: List[SourceCategory], language_id: Any) -> Dict[str, int]:
        transformer = self.context.transformer
        rows = [transformer.transform_category(c) for c in batch]
        inserted = self.target_db.upsert(
            "categories",
            [{k: v for k, v in r.items() if k != "parent_id"} for r in rows],
            conflict_cols=["code"],
            update_cols=CATEGORY_UPDATE_COLS,
            returning=["id", "code"],
        )
        # On conflict the existing id comes back, not the freshly generated one
        id_by_code = {r["code"]: r["id"] for r in inserted}

        translations = []
        for category, row in zip(batch, rows):
            category_id = id_by_code.get(row["code"])
            if category_id is None:
                continue
            translations.append(transformer.transform_category_translation(category, category_id, language_id))

        self.target_db.upsert(
            "category_translations",
            translations,
            conflict_cols=["category_id", "language_id"],
            update_cols=TRANSLATION_UPDATE_COLS,
        )
        return {"success": len(translations), "failed": len(batch) - len(translations)}

    def update_parent_relationships(self) -> int:
        log.info("Updating parent relationships...")
        category_by_entity = self.context.resolver.category_ids_by_entity()
        if not category_by_entity:
            return 0

        source_parents = self.source_db.query(
            "SELECT entity_id, parent_id FROM catalog_category_entity WHERE entity_id IN :ids",
            {"ids": sorted(category_by_entity)},
            expanding=["ids"],
        )

        updated = 0
        for row in source_parents:
            parent_entity = int(row["parent_id"] or 0)
            if parent_entity <= 1:
                continue
            parent_id = category_by_entity.get(parent_entity)
            child_id = category_by_entity.get(int(row["entity_id"]))
            if parent_id is None or child_id is None:
                log.debug(f"Parent {parent_entity} of category {row['entity_id']} was not migrated")
                continue
            updated += self.target_db.execute(
                "UPDATE categories SET parent_id = :parent_id, updated_at = NOW() "
                "WHERE id = :id AND parent_id IS DISTINCT FROM :parent_id",
                {"parent_id": parent_id, "id": child_id},
            )

        log.info(f"Updated parent relationships for {updated} categories")
        return updated
