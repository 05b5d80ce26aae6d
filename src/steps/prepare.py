# =========================================
# 📄 File: src/steps/prepare.py
# Purpose: Stage 1 - connectivity checks, EAV attribute preload, default language,
#          countries seed, and lookup-table validation
# =========================================

import json
import logging
import uuid
from typing import Any, Dict, List

from src.pipeline.errors import ConfigurationError
from src.pipeline.stage import Stage, stage_result
from src.transform.data_transformer import COUNTRIES_FILE
from src.transform.eav_mapper import EavMapper

log = logging.getLogger(__name__)

DEFAULT_LANGUAGE_NAMES = {"en": "English"}
REQUIRED_LOOKUPS = ("languages", "currencies", "countries")


class PrepareStep(Stage):
    name = "prepare"
    description = "EAV attribute IDs and language setup"

    def __init__(self, *args, countries_path: str = COUNTRIES_FILE, **kwargs):
        super().__init__(*args, **kwargs)
        self.countries_path = countries_path

    def run(self) -> Dict[str, Any]:
        log.info("Starting prepare step...")
        self.validate_connections()

        eav_mapper = self.context.eav_mapper or EavMapper(self.source_db, self.cfg.get("eav_attributes", {}))
        self.preload_eav_attributes(eav_mapper)

        code = (self.cfg["steps"].get("translation") or {}).get("source_language") or "en"
        language_id = self.ensure_default_language(code)
        created = self.ensure_countries()
        self.validate_lookups()

        log.info("✅ Prepare step completed")
        return stage_result(
            count=created,
            context={
                "eav_mapper": eav_mapper,
                "default_language_id": language_id,
                "default_language_code": code,
            },
        )

    def validate_connections(self) -> None:
        for db in (self.source_db, self.target_db):
            try:
                db.ping()
            except Exception as e:
                raise ConfigurationError(f"Database '{getattr(db, 'name', '?')}' is not reachable: {e}") from e
            log.info(f"{getattr(db, 'name', 'database')} connection validated")

    def preload_eav_attributes(self, eav_mapper: EavMapper) -> None:
        for entity_type, codes in (self.cfg.get("eav_attributes") or {}).items():
            ids = eav_mapper.get_attribute_ids(codes, entity_type)
            missing = [c for c, v in ids.items() if v is None]
            if missing:
                log.warning(f"Missing attributes for {entity_type}: {', '.join(missing)}")
            log.info(f"Loaded {len(codes) - len(missing)}/{len(codes)} attributes for {entity_type}")
        log.info(f"EAV attribute cache: {eav_mapper.cache_stats()['total_cached']} attributes cached")

    def ensure_default_language(self, code: str) -> Any:
        rows = self.target_db.query("SELECT id FROM languages WHERE code = :code", {"code": code})
        if rows:
            log.info(f"Default language '{code}' already exists")
            return rows[0]["id"]

        language_id = str(uuid.uuid4())
        self.target_db.execute(
            "INSERT INTO languages (id, code, name, created_at, updated_at) VALUES (:id, :code, :name, NOW(), NOW())",
            {"id": language_id, "code": code, "name": DEFAULT_LANGUAGE_NAMES.get(code, code)},
        )
        log.info(f"Created default language '{code}'")
        return language_id

    def _load_countries_file(self) -> List[Dict[str, Any]]:
        try:
            with open(self.countries_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f"Countries data file unusable ({e}); skipping countries seed")
            return []
        countries = data if isinstance(data, list) else data.get("countries", [])
        return [c for c in countries if c.get("name") and c.get("iso2")]

    def ensure_countries(self) -> int:
        countries = self._load_countries_file()
        if not countries:
            return 0

        existing = self.target_db.query("SELECT name, iso_code_2 FROM countries")
        known_names = {r["name"] for r in existing}
        known_isos = {r["iso_code_2"] for r in existing}
        missing = [c for c in countries if c["name"] not in known_names and c["iso2"] not in known_isos]
        if not missing:
            log.info("All countries from the data file already exist")
            return 0

        rows = [
            {
                "id": str(uuid.uuid4()),
                "name": c["name"],
                "iso_code_2": c["iso2"],
                "iso_code_3": c.get("iso3"),
                "postal_code_format": "XXXXX",
                "postal_code_regex": ".*",
                "is_active": True,
            }
            for c in missing
        ]
        created = self.target_db.insert_ignore("countries", rows)
        log.info(f"Countries ensured: {created} new countries created")
        return created

    def validate_lookups(self) -> None:
        empty = []
        for table in REQUIRED_LOOKUPS:
            rows = self.target_db.query(f"SELECT COUNT(*) AS n FROM {table}")
            if not rows or not rows[0]["n"]:
                empty.append(table)
        if empty:
            raise ConfigurationError(f"Required lookup tables are empty: {', '.join(empty)}")
