# tests/unit/test_slugs.py
# ------------------------------------------------------------
# Purpose: Slugs, natural keys and parent-slug computation.
# ------------------------------------------------------------

from src.steps.parent_slugs import descendants, write_parent_slugs
from src.transform import slugs


def test_product_web_sku_uses_base36_epoch():
    # 1577836800 in base 36
    assert slugs.product_web_sku("COIN-1", "2020-01-01 00:00:00") == "COIN-1-q3eio0"
    assert slugs.product_web_sku("COIN-1", "2020-04-30 02:27:44") == "COIN-1-q9kxi8"


def test_base36():
    assert slugs.base36(0) == "0"
    assert slugs.base36(35) == "z"
    assert slugs.base36(36) == "10"


def test_slugify_keeps_unicode_and_collapses_separators():
    assert slugs.slugify("Silver  Coins_2024") == "silver-coins-2024"
    assert slugs.slugify("Münzen & Medaillen") == "münzen-&-medaillen"
    assert slugs.slugify("") == ""


def test_slugify_numeric_only_falls_back_to_residue():
    assert slugs.slugify("1999") == "1999"
    assert slugs.slugify("---") == "category"


def test_category_code_and_entity_id():
    code = slugs.category_code("gold", 2, 41)
    assert code == "gold_2_41"
    assert slugs.entity_id_from_code(code) == 41
    assert slugs.entity_id_from_code(slugs.category_code(None, 2, 7)) == 7
    assert slugs.entity_id_from_code("broken_code_x") is None


def test_compute_parent_slugs_chain():
    tree = [
        {"id": "A", "parent_id": None, "slug": "a"},
        {"id": "B", "parent_id": "A", "slug": "b"},
        {"id": "C", "parent_id": "B", "slug": "c"},
    ]
    out = slugs.compute_parent_slugs(tree)
    assert out["C"] == "a/b/c"
    assert out["B"] == "a/b"
    # Roots have no ancestor chain and get no value
    assert out["A"] is None


def test_compute_parent_slugs_survives_cycles_and_missing_parents():
    tree = [
        {"id": 1, "parent_id": 2, "slug": "x"},
        {"id": 2, "parent_id": 1, "slug": "y"},
        {"id": 3, "parent_id": 99, "slug": "orphan"},
    ]
    out = slugs.compute_parent_slugs(tree)
    assert out[1] == "y/x"
    assert out[3] is None


def test_descendants():
    rows = [{"id": 1, "parent_id": None}, {"id": 2, "parent_id": 1}, {"id": 3, "parent_id": 2}, {"id": 4, "parent_id": None}]
    assert descendants(rows, [1]) == {1, 2, 3}


def _tree_db(fake_db, parent_slugs_of_c=None):
    rows = [
        {"id": "A", "parent_id": None, "slug": "a", "parent_slugs": None},
        {"id": "B", "parent_id": "A", "slug": "b", "parent_slugs": None},
        {"id": "C", "parent_id": "B", "slug": "c", "parent_slugs": parent_slugs_of_c},
    ]
    return fake_db(routes=[("ct.parent_slugs", rows)])


def test_write_parent_slugs_write_once_skips_filled_rows(fake_db):
    db = _tree_db(fake_db, parent_slugs_of_c="old/c")
    assert write_parent_slugs(db, "lang-de", only_missing=True) == 1
    written = {p["category_id"]: p["value"] for _, p in db.executed}
    assert written == {"B": "a/b"}


def test_write_parent_slugs_rewrite_mode_fixes_drift(fake_db):
    db = _tree_db(fake_db, parent_slugs_of_c="old/c")
    write_parent_slugs(db, "lang-de", only_missing=False)
    written = {p["category_id"]: p["value"] for _, p in db.executed}
    assert written == {"B": "a/b", "C": "a/b/c"}
