# =========================================
# 📄 File: src/steps/merge_subcategories.py
# Purpose: Collapse duplicate subcategories
# Duplicates share (slug, parent slug) in the default language. The category with the
# most products survives; links, children and master-category pointers move to it and
# the others are deleted. Parent slugs of the affected trees are recomputed afterwards.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Counters, Stage, stage_result
from src.steps.parent_slugs import descendants, load_language_tree, write_parent_slugs

log = logging.getLogger(__name__)

MERGE_GROUPS_SQL = """
    SELECT
        ct.slug AS category_slug,
        COALESCE(parent_ct.slug, '') AS parent_slug,
        ARRAY_AGG(c.id ORDER BY (
            SELECT COUNT(*) FROM product_categories pc WHERE pc.category_id = c.id
        ) DESC, c.created_at ASC) AS category_ids
    FROM categories c
    JOIN category_translations ct ON c.id = ct.category_id AND ct.language_id = :language_id
    LEFT JOIN categories parent_c ON c.parent_id = parent_c.id
    LEFT JOIN category_translations parent_ct
        ON parent_c.id = parent_ct.category_id AND parent_ct.language_id = :language_id
    GROUP BY ct.slug, COALESCE(parent_ct.slug, '')
    HAVING COUNT(*) > 1
    ORDER BY COALESCE(parent_ct.slug, '') DESC, ct.slug
"""


class MergeSubcategoriesStep(Stage):
    name = "merge_subcategories"
    description = "Merge duplicate subcategories"

    def run(self) -> Dict[str, Any]:
        log.info("Starting merge process...")
        language_id = self.require_default_language()

        groups = self.target_db.query(MERGE_GROUPS_SQL, {"language_id": language_id})
        log.info(f"Found {len(groups)} merge groups")
        if not groups:
            return stage_result(count=0)

        counters = Counters("deleted", "links_moved", "children_moved")
        survivors: List[Any] = []

        def fn(batch, idx):
            for group in batch:
                keep, drop = group["category_ids"][0], list(group["category_ids"][1:])
                log.info(f"Merge group '{group['category_slug']}' (parent '{group['parent_slug']}'): keep {keep}, drop {len(drop)}")
                counters.add(**self.merge_group(keep, drop))
                survivors.append(keep)
            return {"success": len(batch), "failed": 0}

        result = self.batch_processor().process(groups, fn)
        refreshed = self.refresh_parent_slugs(survivors)

        stats = counters.as_dict()
        log.info(
            f"✅ Merge completed: {stats['deleted']} categories deleted, {stats['links_moved']} product links moved, "
            f"{stats['children_moved']} children re-parented, {refreshed} parent slugs refreshed"
        )
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"],
            parent_slugs_refreshed=refreshed, **stats,
        )

    def merge_group(self, keep: Any, drop: List[Any]) -> Dict[str, int]:
        params = {"keep": keep, "drop": drop}
        db = self.target_db
        # Links the survivor already has would violate (product_id, category_id)
        db.execute(
            "DELETE FROM product_categories WHERE category_id IN :drop AND product_id IN "
            "(SELECT product_id FROM product_categories WHERE category_id = :keep)",
            params, expanding=["drop"],
        )
        links = db.execute(
            "UPDATE product_categories SET category_id = :keep, updated_at = NOW() WHERE category_id IN :drop",
            params, expanding=["drop"],
        )
        children = db.execute(
            "UPDATE categories SET parent_id = :keep, updated_at = NOW() WHERE parent_id IN :drop",
            params, expanding=["drop"],
        )
        db.execute(
            "UPDATE products SET master_category_id = :keep, updated_at = NOW() WHERE master_category_id IN :drop",
            params, expanding=["drop"],
        )
        db.execute("DELETE FROM category_translations WHERE category_id IN :drop", params, expanding=["drop"])
        deleted = db.execute("DELETE FROM categories WHERE id IN :drop", params, expanding=["drop"])
        return {"deleted": deleted, "links_moved": links, "children_moved": children}

    def refresh_parent_slugs(self, survivors: List[Any]) -> int:
        if not survivors:
            return 0
        total = 0
        for language in self.target_db.query("SELECT id FROM languages"):
            affected = descendants(load_language_tree(self.target_db, language["id"]), survivors)
            total += write_parent_slugs(self.target_db, language["id"], only_missing=False, category_ids=affected)
        return total
