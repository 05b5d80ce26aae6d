# =========================================
# 📄 File: src/transform/eav_mapper.py
# Purpose: Resolve and cache EAV attribute ids (eav_attribute x eav_entity_type)
# =========================================

import logging
import threading
from typing import Any, Dict, Iterable, Optional

log = logging.getLogger(__name__)

ATTRIBUTE_ID_SQL = """
    SELECT ea.attribute_id
    FROM eav_attribute ea
    JOIN eav_entity_type eet ON ea.entity_type_id = eet.entity_type_id
    WHERE ea.attribute_code = :code AND eet.entity_type_code = :entity_type
"""


class EavMapper:
    def __init__(self, source_db, attribute_lists: Optional[Dict[str, Iterable[str]]] = None):
        self.source_db = source_db
        self.attribute_lists = attribute_lists or {}
        self._cache: Dict[str, Optional[int]] = {}
        self._lock = threading.Lock()

    def get_attribute_id(self, code: str, entity_type: str = "catalog_category") -> Optional[int]:
        key = f"{entity_type}:{code}"
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        rows = self.source_db.query(ATTRIBUTE_ID_SQL, {"code": code, "entity_type": entity_type})
        attribute_id = rows[0]["attribute_id"] if rows else None
        if attribute_id is None:
            log.warning(f"Attribute ID not found for {code} in {entity_type}")

        with self._lock:
            self._cache[key] = attribute_id
        return attribute_id

    def get_attribute_ids(self, codes: Iterable[str], entity_type: str = "catalog_category") -> Dict[str, Optional[int]]:
        return {code: self.get_attribute_id(code, entity_type) for code in codes}

    def preload(self, entity_types: Iterable[str] = ("catalog_category", "catalog_product")) -> Dict[str, Optional[int]]:
        log.info("Preloading EAV attribute IDs...")
        for entity_type in entity_types:
            codes = self.attribute_lists.get(entity_type)
            if codes:
                self.get_attribute_ids(codes, entity_type)
        log.info(f"Preloaded {len(self._cache)} attribute IDs")
        return dict(self._cache)

    def missing(self) -> list:
        """Cache keys that resolved to no attribute."""
        with self._lock:
            return sorted(k for k, v in self._cache.items() if v is None)

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"total_cached": len(self._cache), "cache": dict(self._cache)}

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
        log.info("EAV attribute cache cleared")
