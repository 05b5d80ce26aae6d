# =========================================
# 📄 File: src/steps/products.py
# Purpose: Stage 3 - products and everything hanging off them
#   0. certificate providers / badges / provider translations
#   1. fetch source products (EAV join + url_key merge)
#   2. per batch: transform, upsert ON CONFLICT(product_web_sku), category links
#   3. default-language translations (web SKU -> products.id)
#   4. prices for every AUD currency rate
#   5. gallery images, then product_master_image_id
#   6. provider badge links
# =========================================

import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Tuple

from src.pipeline.errors import ConfigurationError
from src.pipeline.stage import Counters, Stage, stage_result
from src.steps.certificate_providers import ensure_certificate_providers, link_product_badges
from src.steps.product_source import fetch_source_products
from src.transform.records import SourceProduct
from src.transform.slugs import product_web_sku

log = logging.getLogger(__name__)

# Mutable on re-run; everything else on a product row is write-once
PRODUCT_UPDATE_COLS = ["price", "sold_date", "sold_price", "certificate_provider_id", "country_id"]
TRANSLATION_UPDATE_COLS = [
    "title", "description", "short_description", "slug", "meta_title", "meta_description", "meta_keywords",
]

CURRENCY_RATES_SQL = "SELECT currency_to, rate FROM directory_currency_rate WHERE currency_from = 'AUD'"

GALLERY_SQL = """
    SELECT
        mgv2e.entity_id AS product_entity_id,
        mg.value_id,
        mg.value AS value,
        mgv.position,
        mgv.label
    FROM catalog_product_entity_media_gallery mg
    JOIN catalog_product_entity_media_gallery_value_to_entity mgv2e ON mg.value_id = mgv2e.value_id
    LEFT JOIN catalog_product_entity_media_gallery_value mgv ON mg.value_id = mgv.value_id AND mgv.store_id = 0
    WHERE mgv2e.entity_id IN :ids
      AND mg.disabled = 0
      AND mg.media_type = 'image'
    ORDER BY mgv2e.entity_id, mgv.position
"""

LOOKUP_CHUNK = 1000


def _chunks(items: List[Any], size: int = LOOKUP_CHUNK) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ProductsStep(Stage):
    name = "products"
    description = "Products, prices, images and category links"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Pending default translations keyed by (web sku, language); a retried batch overwrites its own
        self._translations: Dict[Tuple[str, Any], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._category_by_entity: Dict[int, Any] = {}
        self.counters = Counters("category_links", "translations", "prices", "images", "master_images", "badge_links")

    def run(self) -> Dict[str, Any]:
        log.info("Starting products migration step...")
        language_id = self.require_default_language()

        products = fetch_source_products(self.source_db, self.context.eav_mapper, self.cfg)
        if not products:
            log.warning("No products found to migrate")
            return stage_result(count=0)
        log.info(f"Found {len(products)} products to migrate")

        ensure_certificate_providers(
            self.target_db, self.cfg.get("media", {}).get("provider_image_base_url"), language_id
        )
        self._category_by_entity = self.context.resolver.category_ids_by_entity()
        result = self.batch_processor().process(products, lambda batch, idx: self.process_batch(batch, language_id))

        id_by_web_sku = self.product_ids_for(products)
        translations_failed = self.migrate_translations(id_by_web_sku)
        self.migrate_prices(products, id_by_web_sku)
        self.migrate_images(products, id_by_web_sku)
        self.update_master_image_ids(id_by_web_sku.values())
        self.counters.add(badge_links=link_product_badges(self.target_db, list(id_by_web_sku.values())))

        stats = self.counters.as_dict()
        failed = result["failed"] + translations_failed
        log.info(
            f"✅ Products migration completed: {result['success']} success, {result['failed']} failed, "
            f"{translations_failed} translations failed ({', '.join(f'{k}={v}' for k, v in stats.items())})"
        )
        return stage_result(
            success=failed == 0, count=result["success"], failed=failed,
            translations_failed=translations_failed, **stats,
        )

    # -----------------------
    # Batch: products + category links
    # -----------------------
    def process_batch(self, batch: List[SourceProduct], language_id: Any) -> Dict[str, int]:
        valid = [p for p in batch if isinstance(p, SourceProduct) and p.product_sku and p.created_at]
        invalid = len(batch) - len(valid)
        if not valid:
            return {"success": 0, "failed": len(batch)}

        transformer = self.context.transformer
        resolver = self.context.resolver
        resolver.prime_countries(code for code in (transformer.resolve_country_code(p) for p in valid) if code)

        # ON CONFLICT DO UPDATE cannot touch one row twice in a statement
        seen, unique = set(), []
        for product in valid:
            web_sku = product_web_sku(product.product_sku, product.created_at)
            if web_sku not in seen:
                seen.add(web_sku)
                unique.append(product)
        valid = unique

        rows, translations = transformer.transform_products(valid, language_id)
        for product, row in zip(valid, rows):
            row["master_category_id"] = self._first_category(product)

        self.target_db.upsert("products", rows, conflict_cols=["product_web_sku"], update_cols=PRODUCT_UPDATE_COLS)
        with self._lock:
            for translation in translations:
                self._translations[(translation["product_id"], translation["language_id"])] = translation

        ids = resolver.product_ids_by_web_sku(r["product_web_sku"] for r in rows)
        self.counters.add(category_links=self.link_categories(valid, rows, ids))
        return {"success": len(batch) - invalid, "failed": invalid}

    def _first_category(self, product: SourceProduct):
        for entity_id in product.category_id_list():
            if entity_id in self._category_by_entity:
                return self._category_by_entity[entity_id]
        return None

    def link_categories(self, products: List[SourceProduct], rows: List[Dict[str, Any]], ids: Dict[str, Any]) -> int:
        links = []
        for product, row in zip(products, rows):
            product_id = ids.get(row["product_web_sku"])
            if not product_id:
                continue
            for entity_id in product.category_id_list():
                category_id = self._category_by_entity.get(entity_id)
                if category_id is None:
                    log.debug(f"Category {entity_id} of product {product.product_sku} was not migrated")
                    continue
                links.append({
                    "id": str(uuid.uuid4()),
                    "product_id": product_id,
                    "category_id": category_id,
                    "created_at": product.created_at,
                    "updated_at": product.updated_at or product.created_at,
                })
        return self.target_db.insert_ignore("product_categories", links, conflict_cols=["product_id", "category_id"])

    # -----------------------
    # Sub-stages after the batches
    # -----------------------
    def product_ids_for(self, products: List[SourceProduct]) -> Dict[str, Any]:
        skus = [product_web_sku(p.product_sku, p.created_at) for p in products if p.product_sku and p.created_at]
        found: Dict[str, Any] = {}
        for chunk in _chunks(skus):
            found.update(self.context.resolver.product_ids_by_web_sku(chunk))
        log.info(f"Resolved {len(found)}/{len(skus)} migrated products")
        return found

    def migrate_translations(self, id_by_web_sku: Dict[str, Any]) -> int:
        """Returns the number of translations that could not be written."""
        log.info("Starting product translations migration...")
        rows = []
        for translation in self._translations.values():
            product_id = id_by_web_sku.get(translation["product_id"])
            if product_id is None:
                continue
            rows.append(dict(translation, product_id=product_id))
        if not rows:
            log.info("No translations to migrate")
            return 0

        def write(batch, idx):
            self.target_db.upsert(
                "product_translations", batch,
                conflict_cols=["product_id", "language_id"], update_cols=TRANSLATION_UPDATE_COLS,
            )
            self.counters.add(translations=len(batch))
            return {"success": len(batch), "failed": 0}

        result = self.batch_processor(label="product translations").process(rows, write)
        log.info(
            f"Product translations migration completed: {result['success']} translations processed, "
            f"{result['failed']} failed"
        )
        return result["failed"]

    def migrate_prices(self, products: List[SourceProduct], id_by_web_sku: Dict[str, Any]) -> None:
        log.info("Starting product prices migration...")
        currencies = {c["code"]: c for c in self.context.resolver.all_currencies()}
        if not currencies:
            raise ConfigurationError("No currencies in target database")
        rates = [r for r in self.source_db.query(CURRENCY_RATES_SQL) if r["currency_to"] in currencies]
        if not rates:
            log.warning("No AUD currency rates matching target currencies; skipping prices")
            return

        transformer = self.context.transformer
        prices, priced = [], set()
        for product in products:
            product_id = id_by_web_sku.get(product_web_sku(product.product_sku, product.created_at)) if product.created_at else None
            if not product_id or product_id in priced:
                continue
            priced.add(product_id)
            for rate in rates:
                prices.append(transformer.transform_price(product_id, product.price, currencies[rate["currency_to"]], rate["rate"]))

        # Re-runs refresh the amounts from the current rates
        written = 0
        for chunk in _chunks(prices, 500):
            self.target_db.upsert(
                "product_prices", chunk,
                conflict_cols=["product_id", "currency_id"], update_cols=["base_amount", "amount"],
            )
            written += len(chunk)
        self.counters.add(prices=written)
        log.info(f"Product prices migration completed: {written} prices written")

    def migrate_images(self, products: List[SourceProduct], id_by_web_sku: Dict[str, Any]) -> None:
        """Products that already own images are skipped, which keeps re-runs from duplicating galleries."""
        log.info("Starting product images migration...")
        by_entity = {}
        for product in products:
            product_id = id_by_web_sku.get(product_web_sku(product.product_sku, product.created_at)) if product.created_at else None
            if product_id:
                by_entity[product.entity_id] = (product, product_id)
        if not by_entity:
            return

        with_images = set()
        product_ids = [pid for _, pid in by_entity.values()]
        for chunk in _chunks(product_ids):
            with_images.update(r["product_id"] for r in self.target_db.query(
                "SELECT DISTINCT product_id FROM product_images WHERE product_id IN :ids",
                {"ids": chunk}, expanding=["ids"],
            ))

        pending = [eid for eid, (_, pid) in by_entity.items() if pid not in with_images]
        gallery = defaultdict(list)
        for chunk in _chunks(pending):
            for image in self.source_db.query(GALLERY_SQL, {"ids": chunk}, expanding=["ids"]):
                gallery[image["product_entity_id"]].append(image)
        log.info(f"Found {sum(len(v) for v in gallery.values())} images in source database")

        transformer = self.context.transformer
        rows = []
        for entity_id, images in gallery.items():
            product, product_id = by_entity[entity_id]
            for row in transformer.transform_images(product_id, images, product.name):
                row["created_at"] = product.created_at
                row["updated_at"] = product.updated_at or product.created_at
                rows.append(row)

        inserted = 0
        for chunk in _chunks(rows, 200):
            inserted += self.target_db.insert("product_images", chunk)
        self.counters.add(images=inserted)
        log.info(f"Product images migration completed: {inserted} images inserted")

    def update_master_image_ids(self, product_ids: Iterable[Any]) -> None:
        log.info("Updating master image IDs for products...")
        updated = 0
        for chunk in _chunks(list(product_ids)):
            updated += self.target_db.execute(
                """
                UPDATE products p
                SET product_master_image_id = pi.id, updated_at = NOW()
                FROM product_images pi
                WHERE pi.product_id = p.id
                  AND pi.is_master = true
                  AND p.id IN :ids
                  AND p.product_master_image_id IS DISTINCT FROM pi.id
                """,
                {"ids": chunk},
                expanding=["ids"],
            )
        self.counters.add(master_images=updated)
        log.info(f"Updated master image IDs for {updated} products")
