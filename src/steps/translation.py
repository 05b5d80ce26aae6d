# =========================================
# 📄 File: src/steps/translation.py
# Purpose: Stage 10 - fan default-language translations out to the other languages
# - contents, categories (then parent slugs per language), products
# - rows that already look translated are skipped, so reruns cost no translate calls
# - a row whose translated title comes back empty is counted failed and not written
# =========================================

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.clients.translator import Translator, translate_fields
from src.pipeline.stage import Counters, Stage, stage_result
from src.steps.parent_slugs import write_parent_slugs
from src.transform.slugs import slugify

log = logging.getLogger(__name__)

CATEGORY_FIELDS = ["title", "description", "meta_title", "meta_description", "meta_keywords"]
PRODUCT_FIELDS = ["title", "description", "short_description", "meta_title", "meta_description", "meta_keywords"]
CONTENT_FIELDS = ["title", "description", "meta_title", "meta_description", "meta_keywords"]

ENTITIES = {
    "content": {
        "table": "content_translations",
        "fk": "content_id",
        "fields": CONTENT_FIELDS,
        "source_sql": """
            SELECT ct.content_id AS entity_id, ct.title, ct.description, ct.meta_title,
                   ct.meta_description, ct.meta_keywords
            FROM contents c
            JOIN content_translations ct ON c.id = ct.content_id AND ct.language_id = :language_id
            WHERE c.published = true AND c.is_allowed = true
            ORDER BY c.sort
        """,
    },
    "category": {
        "table": "category_translations",
        "fk": "category_id",
        "fields": CATEGORY_FIELDS,
        "source_sql": """
            SELECT ct.category_id AS entity_id, c.code, ct.title, ct.description, ct.meta_title,
                   ct.meta_description, ct.meta_keywords
            FROM categories c
            JOIN category_translations ct ON c.id = ct.category_id AND ct.language_id = :language_id
            ORDER BY c.id
        """,
    },
    "product": {
        "table": "product_translations",
        "fk": "product_id",
        "fields": PRODUCT_FIELDS,
        "source_sql": """
            SELECT pt.product_id AS entity_id, p.product_web_sku, pt.title, pt.description,
                   pt.short_description, pt.meta_title, pt.meta_description, pt.meta_keywords
            FROM products p
            JOIN product_translations pt ON p.id = pt.product_id AND pt.language_id = :language_id
            ORDER BY p.id
        """,
    },
}

# contents first, categories before products (parent slugs are computed in between)
ENTITY_ORDER = ["content", "category", "product"]


def _filled(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def is_already_translated(existing: Optional[Dict[str, Any]], source: Dict[str, Any], fields: List[str]) -> bool:
    """
    Skip when every field the source has is also filled in the translation and at least
    one field differs from the source (an untouched copy of the source does not count).
    """
    if not existing:
        return False
    if any(_filled(source.get(f)) and not _filled(existing.get(f)) for f in fields):
        return False
    return any(
        _filled(existing.get(f)) and str(existing.get(f)).strip() != str(source.get(f) or "").strip()
        for f in fields
    )


class TranslationStep(Stage):
    name = "translation"
    description = "Translate categories, products and contents"

    def run(self) -> Dict[str, Any]:
        log.info("Starting global translation migration step...")
        self.default_language_id = self.require_default_language()
        languages = self.get_target_languages()
        # Configured source language wins over the one prepare recorded
        self.source_code = self.settings.get("source_language") or self.context.default_language_code or "en"
        targets = [lang for lang in languages if lang["id"] != self.default_language_id]
        if not targets:
            log.warning("No target languages besides the default; nothing to translate")
            return stage_result(count=0, languages_processed=0)

        if self.context.translator is None:
            self.context.translator = self._build_translator()
        self.counters = Counters("translated", "skipped", "failed_pairs")

        wanted = self.settings.get("entities") or ENTITY_ORDER
        totals = {"success": 0, "failed": 0}
        for entity in [e for e in ENTITY_ORDER if e in wanted]:
            result = self.translate_entity(entity, targets)
            totals["success"] += result["success"]
            totals["failed"] += result["failed"]
            if entity == "category":
                self.calculate_parent_slugs(languages)

        stats = self.counters.as_dict()
        log.info(
            f"✅ Global translation completed: {stats['translated']} translations written, "
            f"{stats['skipped']} already translated, {stats['failed_pairs']} failed"
        )
        return stage_result(
            success=totals["failed"] == 0, count=totals["success"], failed=totals["failed"],
            languages_processed=len(targets), **stats,
        )

    def _build_translator(self) -> Translator:
        opts = self.cfg.get("translator") or {}
        return Translator(region=opts.get("region"), max_retries=opts.get("max_retries", 3))

    def get_target_languages(self) -> List[Dict[str, Any]]:
        """Configured codes intersected with the languages table (all of it when none are configured), plus the default."""
        configured = self.settings.get("languages") or []
        if configured:
            languages = self.target_db.query(
                "SELECT id, code, name FROM languages WHERE code IN :codes ORDER BY code",
                {"codes": list(configured)},
                expanding=["codes"],
            )
            missing = set(configured) - {lang["code"] for lang in languages}
            if missing:
                log.warning(f"Configured languages not in target: {', '.join(sorted(missing))}")
            if not any(lang["id"] == self.default_language_id for lang in languages):
                languages += self.target_db.query(
                    "SELECT id, code, name FROM languages WHERE id = :id", {"id": self.default_language_id}
                )
        else:
            languages = self.target_db.query("SELECT id, code, name FROM languages ORDER BY code")
        log.info(f"Target languages: {', '.join(lang['code'] for lang in languages)}")
        return languages

    def translate_entity(self, entity: str, targets: List[Dict[str, Any]]) -> Dict[str, int]:
        table_def = ENTITIES[entity]
        rows = self.target_db.query(table_def["source_sql"], {"language_id": self.default_language_id})
        rows = [r for r in rows if _filled(r.get("title"))]
        log.info(f"Found {len(rows)} {entity} rows to translate into {len(targets)} languages")
        if not rows:
            return {"success": 0, "failed": 0}

        processor = self.batch_processor(label=f"{entity} translation")
        result = processor.process(rows, lambda batch, idx: self.process_batch(entity, batch, targets))
        log.info(f"{entity.capitalize()} translation completed: {result['success']} success, {result['failed']} failed")
        return result

    def process_batch(self, entity: str, batch: List[Dict[str, Any]], targets: List[Dict[str, Any]]) -> Dict[str, int]:
        failed_rows = 0
        for row in batch:
            ok = True
            for language in targets:
                if not self.translate_row(entity, row, language):
                    ok = False
            if not ok:
                failed_rows += 1
        return {"success": len(batch) - failed_rows, "failed": failed_rows}

    def translate_row(self, entity: str, row: Dict[str, Any], language: Dict[str, Any]) -> bool:
        table_def = ENTITIES[entity]
        fields = table_def["fields"]
        existing = self.target_db.query(
            f"SELECT {', '.join(fields)} FROM {table_def['table']} "
            f"WHERE {table_def['fk']} = :entity_id AND language_id = :language_id LIMIT 1",
            {"entity_id": row["entity_id"], "language_id": language["id"]},
        )
        if is_already_translated(existing[0] if existing else None, row, fields):
            self.counters.add(skipped=1)
            return True

        opts = self.cfg.get("translator") or {}
        translated = translate_fields(
            self.context.translator,
            {f: row.get(f) for f in fields},
            self.source_code,
            language["code"],
            max_concurrent=opts.get("max_concurrent_requests", 5),
            pause_secs=opts.get("pause_between_chunks_ms", 200) / 1000.0,
        )
        if not translated.get("title", "").strip():
            log.warning(f"Translation failed for {entity} {row['entity_id']} to {language['code']} - empty title result")
            self.counters.add(failed_pairs=1)
            return False

        now = datetime.now(timezone.utc)
        record = dict(
            {f: translated.get(f) or None for f in fields},
            id=str(uuid.uuid4()),
            slug=slugify(translated["title"]),
            language_id=language["id"],
            created_at=now,
            updated_at=now,
        )
        record[table_def["fk"]] = row["entity_id"]
        record["title"] = translated["title"]
        self.target_db.upsert(
            table_def["table"], [record], conflict_cols=[table_def["fk"], "language_id"], update_cols=fields + ["slug"]
        )
        self.counters.add(translated=1)
        return True

    def calculate_parent_slugs(self, languages: List[Dict[str, Any]]) -> int:
        log.info("Calculating parent slugs for all translated categories")
        total = 0
        for language in languages:
            total += write_parent_slugs(self.target_db, language["id"], only_missing=True)
        return total
