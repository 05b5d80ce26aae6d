# tests/unit/test_step_helpers.py
# ------------------------------------------------------------
# Purpose: Small pure helpers used by the stages.
# ------------------------------------------------------------

from src.steps.certificate_providers import provider_image_url
from src.steps.customers import build_customers
from src.steps.product_source import build_products_query
from src.steps.update_image_paths import prefixed_url
from src.transform.records import SourceProduct, group_joined_rows

BASE = "https://cdn.example.com/media/catalog/product"


def test_prefixed_url():
    assert prefixed_url("/a/b/c.jpg", BASE) == f"{BASE}/a/b/c.jpg"
    assert prefixed_url(f"{BASE}/a/b/c.jpg", BASE) is None
    assert prefixed_url("https://other.example.com/c.jpg", BASE) is None


def test_provider_image_url():
    assert provider_image_url("https://x.example.com/stream/", "pcgs.png") == "https://x.example.com/stream//Grading%20Services/pcgs.png"
    assert provider_image_url("https://x.example.com/stream", None) is None


def test_group_joined_rows_keeps_first_seen_order_and_nones():
    rows = [
        {"parent": 2, "child": None},
        {"parent": 1, "child": 10},
        {"parent": 2, "child": 20},
    ]
    groups = group_joined_rows(rows, "parent")
    assert [[r["child"] for r in g] for g in groups] == [[None, 20], [10]]
    assert group_joined_rows([], "parent") == []


def test_build_customers_attaches_addresses():
    rows = [
        {"customer_entity_id": 1, "customer_email": "a@example.com", "address_entity_id": 7, "address_street": "x"},
        {"customer_entity_id": 1, "customer_email": "a@example.com", "address_entity_id": 8, "address_street": "y"},
        {"customer_entity_id": 2, "customer_email": "b@example.com", "address_entity_id": None, "address_street": None},
    ]
    customers = build_customers(rows)
    assert [c.email for c in customers] == ["a@example.com", "b@example.com"]
    assert [a.entity_id for a in customers[0].addresses] == [7, 8]
    assert customers[1].addresses == []


def test_products_query_joins_resolved_attributes_only():
    sql = build_products_query({"name": 71, "grade_value": 140, "country": 88}, exclude_skus=True, only_ids=False)
    assert "catalog_product_entity_varchar eav_name" in sql
    assert "COALESCE(eav_name.value, cpf.name, cpe.sku) AS name" in sql
    assert "catalog_product_entity_decimal eav_grade_value" in sql
    assert "eav_country_opt.value AS country_int" in sql
    assert "NULL AS grade_prefix" in sql
    assert "cpe.sku NOT IN :excluded_skus" in sql
    assert ":entity_ids" not in sql
    assert "GROUP_CONCAT(DISTINCT category_id)" in sql


def test_source_product_category_list():
    assert SourceProduct(category_ids="4,17,,x").category_id_list() == [4, 17]
    assert SourceProduct.from_row({"category_ids": None}).category_ids == ""
