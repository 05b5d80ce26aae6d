# tests/unit/test_catalog_steps.py
# ------------------------------------------------------------
# Purpose: prepare, categories and customers stages against
#          fake databases (no MySQL/PostgreSQL).
# ------------------------------------------------------------

import json

import pytest

from src.pipeline.errors import ConfigurationError
from src.pipeline.stage import MigrationContext
from src.steps.categories import CategoriesStep
from src.steps.customers import CustomersStep
from src.steps.prepare import PrepareStep
from src.transform.data_transformer import DataTransformer
from src.transform.eav_mapper import EavMapper
from src.transform.reference_resolver import ReferenceResolver


def _context(target, **kw):
    resolver = ReferenceResolver(target)
    return MigrationContext(resolver=resolver, transformer=DataTransformer(resolver), **kw)


# -----------------------
# EAV mapper
# -----------------------
def test_eav_mapper_caches_hits_and_misses(fake_db):
    source = fake_db(routes=[("FROM eav_attribute ea", lambda p: [] if p["code"] == "ghost" else [{"attribute_id": 73}])])
    mapper = EavMapper(source, {"catalog_product": ["name", "ghost"]})

    assert mapper.preload() == {"catalog_product:name": 73, "catalog_product:ghost": None}
    mapper.get_attribute_id("name", "catalog_product")
    assert len(source.queries) == 2
    assert mapper.missing() == ["catalog_product:ghost"]
    mapper.clear()
    assert mapper.cache_stats()["total_cached"] == 0


# -----------------------
# prepare
# -----------------------
@pytest.fixture
def countries_file(tmp_path):
    path = tmp_path / "countries.json"
    path.write_text(json.dumps({"countries": [
        {"name": "Australia", "iso2": "AU", "iso3": "AUS"},
        {"name": "Canada", "iso2": "CA", "iso3": "CAN"},
    ]}), encoding="utf-8")
    return str(path)


def _prepare_target(fake_db, lookup_count=3):
    return fake_db(name="target", routes=[
        ("FROM languages WHERE code", []),
        ("SELECT name, iso_code_2 FROM countries", [{"name": "Australia", "iso_code_2": "AU"}]),
        ("COUNT(*)", [{"n": lookup_count}]),
    ])


def test_prepare_creates_language_seeds_countries_and_fills_context(cfg, fake_db, countries_file):
    cfg["eav_attributes"] = {"catalog_category": ["name", "ghost"]}
    source = fake_db(name="source", routes=[
        ("FROM eav_attribute ea", lambda p: [] if p["code"] == "ghost" else [{"attribute_id": 41}]),
    ])
    target = _prepare_target(fake_db)

    result = PrepareStep(source, target, cfg, _context(target), countries_path=countries_file).run()

    assert result["count"] == 1
    assert [r["iso_code_2"] for r in target.written("countries")] == ["CA"]
    assert any(sql.startswith("INSERT INTO languages") for sql, _ in target.executed)
    ctx = result["context"]
    assert ctx["default_language_code"] == "en"
    assert ctx["default_language_id"]
    assert ctx["eav_mapper"].get_attribute_id("name") == 41


def test_prepare_fails_on_empty_lookup_tables(cfg, fake_db, countries_file):
    target = _prepare_target(fake_db, lookup_count=0)
    with pytest.raises(ConfigurationError):
        PrepareStep(fake_db(name="source"), target, cfg, _context(target), countries_path=countries_file).run()


def test_stages_refuse_to_run_without_default_language(cfg, fake_db):
    target = fake_db()
    with pytest.raises(ConfigurationError):
        CategoriesStep(fake_db(), target, cfg, _context(target)).run()


# -----------------------
# categories
# -----------------------
def test_categories_upsert_translations_and_link_parents(cfg, fake_db):
    source = fake_db(name="source", routes=[
        ("FROM catalog_category_flat_store_1", [
            {"entity_id": 10, "parent_id": 2, "name": "Gold", "url_key": "gold", "is_active": 1, "position": 1},
            {"entity_id": 11, "parent_id": 10, "name": "Bullion", "url_key": "bullion", "is_active": 0, "position": 2},
        ]),
        ("FROM catalog_category_entity", [{"entity_id": 10, "parent_id": 2}, {"entity_id": 11, "parent_id": 10}]),
    ])
    target = fake_db(name="target", routes=[
        ("SELECT id, code FROM categories", [{"id": "c10", "code": "gold_2_10"}, {"id": "c11", "code": "bullion_10_11"}]),
    ])

    result = CategoriesStep(source, target, cfg, _context(target, default_language_id="lang-en")).run()

    categories = target.written("categories")
    assert [c["code"] for c in categories] == ["gold_2_10", "bullion_10_11"]
    assert [c["is_hidden"] for c in categories] == [False, True]
    assert all("parent_id" not in c for c in categories)

    translations = target.written("category_translations")
    assert [t["slug"] for t in translations] == ["gold", "bullion"]
    assert {t["language_id"] for t in translations} == {"lang-en"}

    # Entity 10 hangs off the root (parent 2 is excluded), only 11 gets a parent
    assert [p for _, p in target.executed] == [{"parent_id": "c10", "id": "c11"}]
    assert result["count"] == 2 and result["parents_linked"] == 1


# -----------------------
# customers
# -----------------------
def test_customers_skip_existing_and_dedupe_addresses(cfg, fake_db, tmp_path):
    export_path = tmp_path / "exports" / "emails.csv"
    cfg["exports"] = {"customer_emails_csv": str(export_path)}

    source = fake_db(name="source", routes=[("FROM customer_entity ce", [
        {"customer_entity_id": 1, "customer_email": "a@example.com", "customer_firstname": "Ann",
         "address_entity_id": 7, "address_street": "1 New St", "address_postcode": "6011", "address_country_id": "NZ"},
        {"customer_entity_id": 2, "customer_email": "b@example.com", "customer_firstname": "Bob",
         "address_entity_id": 8, "address_street": "5 Old Rd", "address_postcode": "3000", "address_country_id": "US"},
        {"customer_entity_id": 3, "customer_email": None, "customer_firstname": "Nobody",
         "address_entity_id": None, "address_street": None, "address_postcode": None, "address_country_id": None},
    ])])
    target = fake_db(name="target")

    def users_by_email(params):
        known = [{"id": "u-b", "email": "b@example.com"}]
        known += [{"id": u["id"], "email": u["email"]} for u in target.written("users")]
        return [u for u in known if u["email"] in params["emails"]]

    target.route("SELECT id, email FROM users WHERE email IN", users_by_email)
    target.route("iso_code_2 IN", [{"id": "c-us", "iso_code_2": "US"}])
    target.route("FROM addresses WHERE user_id IN", [{"user_id": "u-b", "address_line": "5 Old Rd", "post_code": "3000"}])
    target.route("SELECT email, first_name, last_name, user_code", [
        {"email": "a@example.com", "first_name": "Ann", "last_name": "", "user_code": "CUST-1"},
        {"email": "b@example.com", "first_name": "Bob", "last_name": "", "user_code": "CUST-2"},
    ])

    result = CustomersStep(source, target, cfg, _context(target, default_language_id="lang-en")).run()

    assert [u["email"] for u in target.written("users")] == ["a@example.com"]
    addresses = target.written("addresses")
    assert len(addresses) == 1
    assert addresses[0]["country_id"] == "c-us"
    assert result["failed"] == 1 and result["count"] == 2
    assert result["existing"] == 1
    assert result["exported"] == 2
    assert export_path.read_text(encoding="utf-8").splitlines()[0] == "email,first_name,last_name,user_code"
