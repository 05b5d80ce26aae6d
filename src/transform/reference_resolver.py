# =========================================
# 📄 File: src/transform/reference_resolver.py
# Purpose: Memoized lookups from source-side symbols to target primary keys
# - provider name, language code, ISO country, currency code, Xero account code
# - bulk joins: product_web_sku -> products.id, source category entity_id -> categories.id
# Caches are process-local and append-only; each one is guarded by a lock and
# concurrent misses may both hit the database (no coalescing).
# =========================================

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from src.transform.slugs import entity_id_from_code

log = logging.getLogger(__name__)

_MISS = object()


class _Memo:
    """One lookup table. negative=True caches "not found" as well."""

    def __init__(self, name: str, loader: Callable[[Any], Any], negative: bool):
        self.name = name
        self.loader = loader
        self.negative = negative
        self._data: Dict[Any, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: Any) -> Any:
        with self._lock:
            cached = self._data.get(key, _MISS)
        if cached is not _MISS:
            return cached

        value = self.loader(key)
        if value is not None or self.negative:
            with self._lock:
                self._data.setdefault(key, value)
        return value

    def prime(self, mapping: Dict[Any, Any]) -> None:
        with self._lock:
            self._data.update(mapping)

    def __len__(self) -> int:
        return len(self._data)


class ReferenceResolver:
    def __init__(self, target_db):
        self.target_db = target_db
        self._providers = _Memo("certificate_provider", self._load_provider, negative=True)
        self._languages = _Memo("language", self._load_language, negative=False)
        self._countries = _Memo("country", self._load_country, negative=False)
        self._currencies = _Memo("currency", self._load_currency, negative=False)
        self._xero_accounts = _Memo("xero_account", self._load_xero_account, negative=True)

    # ---- loaders (one row each) ----
    def _first(self, sql: str, params: Dict[str, Any], column: str = "id"):
        rows = self.target_db.query(sql, params)
        return rows[0][column] if rows else None

    def _load_provider(self, name: str):
        return self._first("SELECT id FROM certificate_providers WHERE name = :name LIMIT 1", {"name": name})

    def _load_language(self, code: str):
        return self._first("SELECT id FROM languages WHERE code = :code LIMIT 1", {"code": code})

    def _load_country(self, iso2: str):
        return self._first("SELECT id FROM countries WHERE iso_code_2 = :iso LIMIT 1", {"iso": iso2})

    def _load_currency(self, code: str):
        return self._first("SELECT id FROM currencies WHERE code = :code LIMIT 1", {"code": code})

    def _load_xero_account(self, code: str) -> Optional[Tuple[Any, Any]]:
        rows = self.target_db.query(
            "SELECT id, tenant_id FROM xero_accounts WHERE account_number = :code LIMIT 1",
            {"code": code},
        )
        return (rows[0]["id"], rows[0]["tenant_id"]) if rows else None

    # ---- memoized lookups ----
    def certificate_provider_id(self, name: Optional[str]):
        return self._providers.get(name) if name else None

    def language_id(self, code: Optional[str]):
        return self._languages.get(code) if code else None

    def country_id(self, iso2: Optional[str]):
        return self._countries.get(iso2.upper()) if iso2 else None

    def currency_id(self, code: Optional[str]):
        return self._currencies.get(code.upper()) if code else None

    def xero_account(self, code: Optional[str]) -> Tuple[Any, Any]:
        """(xero_account_id, xero_tenant_id), or (None, None) when unknown."""
        if not code or not str(code).strip():
            return None, None
        found = self._xero_accounts.get(str(code).strip())
        if not found:
            log.debug(f"Xero account {code!r} not found in target")
            return None, None
        return found

    def prime_countries(self, iso_codes: Iterable[str]) -> None:
        """Bulk-load a batch's countries in one query."""
        wanted = sorted({c.upper() for c in iso_codes if c})
        if not wanted:
            return
        rows = self.target_db.query(
            "SELECT id, iso_code_2 FROM countries WHERE iso_code_2 IN :isos",
            {"isos": wanted},
            expanding=["isos"],
        )
        self._countries.prime({r["iso_code_2"]: r["id"] for r in rows})

    # ---- bulk joins (not cached: rows appear while the stage runs) ----
    def product_ids_by_web_sku(self, web_skus: Iterable[str]) -> Dict[str, Any]:
        skus = sorted(set(s for s in web_skus if s))
        if not skus:
            return {}
        rows = self.target_db.query(
            "SELECT id, product_web_sku FROM products WHERE product_web_sku IN :skus",
            {"skus": skus},
            expanding=["skus"],
        )
        return {r["product_web_sku"]: r["id"] for r in rows}

    def product_ids_by_sku(self) -> Dict[str, Any]:
        rows = self.target_db.query("SELECT id, product_sku FROM products")
        return {r["product_sku"]: r["id"] for r in rows}

    def category_ids_by_entity(self) -> Dict[int, Any]:
        rows = self.target_db.query("SELECT id, code FROM categories")
        mapping: Dict[int, Any] = {}
        for r in rows:
            entity_id = entity_id_from_code(r["code"])
            if entity_id is not None:
                mapping[entity_id] = r["id"]
        return mapping

    def all_currencies(self) -> List[Dict[str, Any]]:
        return self.target_db.query("SELECT id, code FROM currencies")

    def cache_stats(self) -> Dict[str, int]:
        return {
            memo.name: len(memo)
            for memo in (self._providers, self._languages, self._countries, self._currencies, self._xero_accounts)
        }
