# tests/unit/test_products_step.py
# ------------------------------------------------------------
# Purpose: products and update_products stages against fake
#          databases: upsert, category links, translations,
#          prices, gallery images and provider badge links.
# ------------------------------------------------------------

import pytest

from src.pipeline.stage import MigrationContext
from src.steps.products import ProductsStep
from src.steps.update_products import UpdateProductsStep
from src.transform.data_transformer import DataTransformer
from src.transform.eav_mapper import EavMapper
from src.transform.reference_resolver import ReferenceResolver

WEB_SKU = "COIN-1-q3eio0"

PRODUCT_ROW = {
    "entity_id": 5,
    "product_sku": "COIN-1",
    "name": "1921 Morgan Dollar",
    "price": "100.00",
    "created_at": "2020-01-01 00:00:00",
    "updated_at": "2020-01-02 00:00:00",
    "certification_type": 4,
    "grade_prefix": "MS",
    "grade_value": "65",
    "grade_suffix": "BN",
    "country_value": "United States",
    "status": 1,
    "visibility": 4,
    "category_ids": "10,99",
    "url_key": "morgan-flat",
}


def _source(fake_db, rows):
    return fake_db(name="source", routes=[
        ("FROM eav_attribute ea", [{"attribute_id": 1}]),
        ("SELECT entity_id, value AS url_key", [{"entity_id": 5, "url_key": "morgan-dollar"}]),
        ("FROM catalog_product_entity cpe", rows),
        ("FROM directory_currency_rate", [{"currency_to": "USD", "rate": "0.65"}, {"currency_to": "EUR", "rate": "0.6"}]),
        ("catalog_product_entity_media_gallery mg", [
            {"product_entity_id": 5, "value_id": 1, "value": "/m/o/morgan.jpg", "position": 1, "label": None},
        ]),
    ])


def _context(source, target):
    resolver = ReferenceResolver(target)
    return MigrationContext(
        default_language_id="lang-en",
        eav_mapper=EavMapper(source),
        resolver=resolver,
        transformer=DataTransformer(resolver, media={"cdn_base_url": "https://cdn.example.com/catalog"}),
    )


@pytest.fixture
def target(fake_db):
    return fake_db(name="target", routes=[
        ("SELECT id, name FROM certificate_providers", [{"id": "prov-pcgs", "name": "PCGS"}]),
        ("FROM certificate_providers WHERE name", [{"id": "prov-pcgs"}]),
        ("SELECT DISTINCT certificate_provider_id FROM certificate_provider_badges", [{"certificate_provider_id": "prov-pcgs"}]),
        ("iso_code_2 IN", [{"id": "c-us", "iso_code_2": "US"}]),
        ("SELECT id, code FROM categories", [{"id": "cat-10", "code": "gold_2_10"}]),
        ("FROM products WHERE product_web_sku IN", [{"id": "prod-1", "product_web_sku": WEB_SKU}]),
        ("SELECT id, code FROM currencies", [{"id": "cur-usd", "code": "USD"}, {"id": "cur-aud", "code": "AUD"}]),
        ("certificate_provider_id, created_at FROM products", [
            {"id": "prod-1", "certificate_provider_id": "prov-pcgs", "created_at": "2020-01-01 00:00:00"},
        ]),
        ("SELECT id, certificate_provider_id FROM certificate_provider_badges", [
            {"id": "b1", "certificate_provider_id": "prov-pcgs"},
            {"id": "b2", "certificate_provider_id": "prov-pcgs"},
        ]),
    ])


def test_products_stage_writes_product_tree(cfg, fake_db, target):
    rows = [PRODUCT_ROW, dict(PRODUCT_ROW), dict(PRODUCT_ROW, entity_id=6, product_sku="COIN-2", created_at=None)]
    source = _source(fake_db, rows)

    result = ProductsStep(source, target, cfg, _context(source, target)).run()

    assert result["count"] == 2 and result["failed"] == 1

    products = target.written("products")
    assert len(products) == 1
    product = products[0]
    assert product["product_web_sku"] == WEB_SKU
    assert product["master_category_id"] == "cat-10"
    assert product["certificate_provider_id"] == "prov-pcgs"
    assert product["country_id"] == "c-us"

    assert [(l["product_id"], l["category_id"]) for l in target.written("product_categories")] == [("prod-1", "cat-10")]

    translations = target.written("product_translations")
    assert [(t["product_id"], t["slug"]) for t in translations] == [("prod-1", "morgan-dollar")]

    prices = target.written("product_prices")
    assert [(p["currency_code"], p["amount"]) for p in prices] == [("USD", 65.0)]

    images = target.written("product_images")
    assert [(i["image_url"], i["is_master"]) for i in images] == [("https://cdn.example.com/catalog/m/o/morgan.jpg", True)]
    assert any("product_master_image_id = pi.id" in sql for sql, _ in target.executed)

    assert sorted(l["certificate_provider_badge_id"] for l in target.written("product_certificate_provider_badges")) == ["b1", "b2"]

    # Four missing providers were created; PCGS already had badges
    created = [p["name"] for sql, p in target.executed if sql.startswith("INSERT INTO certificate_providers")]
    assert created == ["PMG", "NGC", "Uncertified", "Other"]
    assert len(target.written("certificate_provider_badges")) == 4 * 3


def test_products_with_images_are_not_given_more(cfg, fake_db, target):
    target.routes.insert(0, ("FROM product_images WHERE product_id IN", [{"product_id": "prod-1"}]))
    source = _source(fake_db, [PRODUCT_ROW])

    ProductsStep(source, target, cfg, _context(source, target)).run()

    assert target.written("product_images") == []


def test_update_products_refreshes_known_products_only(cfg, fake_db, target):
    sold = dict(PRODUCT_ROW, eav_sold_date="2024-02-01 00:00:00", eav_sold_price="180.00")
    unknown = dict(PRODUCT_ROW, entity_id=7, product_sku="COIN-9")
    source = _source(fake_db, [sold, unknown])

    result = UpdateProductsStep(source, target, cfg, _context(source, target)).run()

    assert result["updated"] == 1
    assert result["missing"] == 1
    (sql, params), = target.executed
    assert params["product_web_sku"] == WEB_SKU
    assert params["status"] == "sold"
    assert params["sold_price"] == "180.00"


def test_retried_batch_keeps_one_translation_per_product(cfg, fake_db, target):
    cfg["processing"]["retry_attempts"] = 2
    target.failures = {"product_categories": 1}
    source = _source(fake_db, [PRODUCT_ROW])

    result = ProductsStep(source, target, cfg, _context(source, target)).run()

    assert result["count"] == 1 and result["failed"] == 0
    translations = target.written("product_translations")
    assert len(translations) == 1
    assert len({(t["product_id"], t["language_id"]) for t in translations}) == 1


def test_failed_translations_fail_the_stage(cfg, fake_db, target):
    target.failures = {"product_translations": 1}
    source = _source(fake_db, [PRODUCT_ROW])

    result = ProductsStep(source, target, cfg, _context(source, target)).run()

    assert result["count"] == 1
    assert result["translations_failed"] == 1
    assert result["failed"] == 1
    assert result["success"] is False
    assert target.written("product_translations") == []


def test_prices_are_refreshed_on_rerun(cfg, fake_db, target):
    source = _source(fake_db, [PRODUCT_ROW])

    ProductsStep(source, target, cfg, _context(source, target)).run()

    price_writes = [u for u in target.upserts if u["table"] == "product_prices"]
    assert [u["conflict"] for u in price_writes] == [["product_id", "currency_id"]]
    assert not any(i["table"] == "product_prices" for i in target.inserts)


def test_no_source_products_writes_nothing(cfg, fake_db, target):
    source = _source(fake_db, [])

    result = ProductsStep(source, target, cfg, _context(source, target)).run()

    assert result["count"] == 0 and result["failed"] == 0
    assert not target.executed and not target.inserts and not target.upserts
