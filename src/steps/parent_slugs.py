# =========================================
# 📄 File: src/steps/parent_slugs.py
# Purpose: Persist category_translations.parent_slugs for one language
# Two modes:
#   only_missing=True  -> write-once fill (translation stage)
#   only_missing=False -> rewrite anything that drifted (merge / repair stages)
# Roots (no ancestors) are never given a value.
# =========================================

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from src.transform.slugs import compute_parent_slugs

log = logging.getLogger(__name__)

LANGUAGE_TREE_SQL = """
    SELECT c.id, c.parent_id, ct.slug, ct.parent_slugs
    FROM categories c
    JOIN category_translations ct ON ct.category_id = c.id AND ct.language_id = :language_id
"""


def load_language_tree(target_db, language_id: Any) -> List[Dict[str, Any]]:
    return target_db.query(LANGUAGE_TREE_SQL, {"language_id": language_id})


def descendants(rows: Iterable[Dict[str, Any]], roots: Iterable[Any]) -> Set[Any]:
    """roots plus everything below them."""
    children: Dict[Any, List[Any]] = {}
    for row in rows:
        children.setdefault(row["parent_id"], []).append(row["id"])
    found: Set[Any] = set()
    stack = list(roots)
    while stack:
        current = stack.pop()
        if current in found:
            continue
        found.add(current)
        stack.extend(children.get(current, []))
    return found


def write_parent_slugs(
    target_db,
    language_id: Any,
    only_missing: bool = True,
    category_ids: Optional[Set[Any]] = None,
) -> int:
    rows = load_language_tree(target_db, language_id)
    if not rows:
        return 0
    computed = compute_parent_slugs(rows)
    current = {r["id"]: r["parent_slugs"] for r in rows}

    updated = 0
    for category_id, value in computed.items():
        if category_ids is not None and category_id not in category_ids:
            continue
        existing = current.get(category_id)
        if only_missing and existing is not None:
            continue
        if value == existing or (value is None and only_missing):
            continue
        updated += target_db.execute(
            "UPDATE category_translations SET parent_slugs = :value, updated_at = NOW() "
            "WHERE category_id = :category_id AND language_id = :language_id",
            {"value": value, "category_id": category_id, "language_id": language_id},
        )
    log.info(f"Parent slugs updated for {updated} categories (language {language_id})")
    return updated
