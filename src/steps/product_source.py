# =========================================
# 📄 File: src/steps/product_source.py
# Purpose: Build and run the source product fetch
# - flat table + one LEFT JOIN per EAV attribute (ids come from EavMapper)
# - category ids via GROUP_CONCAT, sold date/price aggregates from whitelisted orders
# - url_key read in a second statement and merged in
# Shared by the products and update_products stages.
# =========================================

import logging
from typing import Any, Dict, List, Optional, Tuple

from src.transform.records import SourceProduct

log = logging.getLogger(__name__)

# logical field -> (EAV backend table suffix, flat column used as fallback, alias)
EAV_FIELDS: List[Tuple[str, str, Optional[str], str]] = [
    ("name", "varchar", "name", "name"),
    ("price", "decimal", "price", "price"),
    ("description", "text", "description", "description"),
    ("meta_title", "varchar", None, "meta_title"),
    ("meta_description", "varchar", None, "meta_description"),
    ("certification_number", "text", None, "certification_number"),
    ("coin_number", "text", None, "coin_number"),
    ("grade_prefix", "varchar", None, "grade_prefix"),
    ("grade_value", "decimal", None, "grade_value"),
    ("grade_suffix", "varchar", None, "grade_suffix"),
    ("year", "varchar", "year", "year"),
    ("country_of_manufacture", "varchar", None, "country_of_manufacture"),
    ("certification_type", "int", None, "certification_type"),
    ("archived", "int", None, "archived_status"),
    ("sold_on", "datetime", None, "eav_sold_date"),
    ("sold_price", "decimal", None, "eav_sold_price"),
    ("sort_string", "varchar", None, "sort_string"),
    ("status", "int", None, "status"),
    ("visibility", "int", None, "visibility"),
    ("xero_sale_account", "text", None, "xero_sale_account"),
]

URL_KEYS_SQL = """
    SELECT entity_id, value AS url_key
    FROM catalog_product_entity_varchar
    WHERE attribute_id = :attribute_id AND store_id = 0 AND entity_id IN :ids
"""


def _attribute_ids(eav_mapper, cfg: Dict[str, Any]) -> Dict[str, Optional[int]]:
    codes = cfg.get("product_attributes") or {}
    return {field: eav_mapper.get_attribute_id(codes.get(field, field), "catalog_product")
            for field in [f[0] for f in EAV_FIELDS] + ["country", "url_key"]}


def build_products_query(attribute_ids: Dict[str, Optional[int]], exclude_skus: bool, only_ids: bool) -> str:
    """
    One LEFT JOIN per resolved attribute; unresolved attributes select NULL
    (or the flat column) so the row shape never changes.
    """
    selects = ["cpe.entity_id", "cpe.sku AS product_sku"]
    joins = []

    for field, backend, flat_col, alias in EAV_FIELDS:
        attribute_id = attribute_ids.get(field)
        fallbacks = [f"cpf.{flat_col}"] if flat_col else []
        if field == "name":
            fallbacks.append("cpe.sku")
        if attribute_id is None:
            expr = f"COALESCE({', '.join(fallbacks)})" if len(fallbacks) > 1 else (fallbacks[0] if fallbacks else "NULL")
        else:
            t = f"eav_{field}"
            joins.append(
                f"LEFT JOIN catalog_product_entity_{backend} {t} ON cpe.entity_id = {t}.entity_id "
                f"AND {t}.attribute_id = {int(attribute_id)} AND {t}.store_id = 0"
            )
            expr = f"COALESCE({t}.value, {', '.join(fallbacks)})" if fallbacks else f"{t}.value"
        selects.append(f"{expr} AS {alias}")

    # Option-typed country: resolve the label through the shared option value table
    country_id = attribute_ids.get("country")
    if country_id is None:
        selects.append("NULL AS country_int")
    else:
        joins.append(
            f"LEFT JOIN catalog_product_entity_int eav_country ON cpe.entity_id = eav_country.entity_id "
            f"AND eav_country.attribute_id = {int(country_id)} AND eav_country.store_id = 0"
        )
        joins.append(
            "LEFT JOIN eav_attribute_option_value eav_country_opt "
            "ON eav_country_opt.option_id = eav_country.value AND eav_country_opt.store_id = 0"
        )
        selects.append("eav_country_opt.value AS country_int")

    selects += [
        "cpf.short_description AS short_description",
        "cpf.image AS image",
        "cpf.url_key AS url_key",
        "cpf.country_value AS country_value",
        "cpe.created_at",
        "cpe.updated_at",
        "sold_dates.first_sale_date AS sold_date",
        "sold_prices.last_sold_price AS last_sold_price",
        "cats.category_ids AS category_ids",
    ]

    where = ["cpe.type_id = :product_type"]
    if exclude_skus:
        where.append("cpe.sku NOT IN :excluded_skus")
    if only_ids:
        where.append("cpe.entity_id IN :entity_ids")

    newline = "\n        "
    return f"""
        SELECT
            {(',' + newline + '    ').join(selects)}
        FROM catalog_product_entity cpe
        LEFT JOIN catalog_product_flat_1 cpf ON cpe.entity_id = cpf.entity_id
        {newline.join(joins)}
        INNER JOIN (
            SELECT product_id, GROUP_CONCAT(DISTINCT category_id) AS category_ids
            FROM catalog_category_product
            GROUP BY product_id
        ) cats ON cats.product_id = cpe.entity_id
        LEFT JOIN (
            SELECT soi.product_id, MIN(so.created_at) AS first_sale_date
            FROM sales_order_item soi
            JOIN sales_order so ON soi.order_id = so.entity_id
            WHERE so.status IN :order_statuses
            GROUP BY soi.product_id
        ) sold_dates ON cpe.entity_id = sold_dates.product_id
        LEFT JOIN (
            SELECT soi.product_id, MAX(soi.price) AS last_sold_price
            FROM sales_order_item soi
            JOIN sales_order so ON soi.order_id = so.entity_id
            WHERE so.status IN :order_statuses
            GROUP BY soi.product_id
        ) sold_prices ON cpe.entity_id = sold_prices.product_id
        WHERE {' AND '.join(where)}
        ORDER BY cpe.entity_id
    """


def fetch_source_products(source_db, eav_mapper, cfg: Dict[str, Any], entity_ids: Optional[List[int]] = None) -> List[SourceProduct]:
    filters = cfg["filters"]
    excluded = list(filters.get("excluded_product_skus") or [])
    attribute_ids = _attribute_ids(eav_mapper, cfg)

    params: Dict[str, Any] = {
        "product_type": filters["product_types"][0],
        "order_statuses": list(filters["order_statuses"]),
    }
    expanding = ["order_statuses"]
    if excluded:
        params["excluded_skus"] = excluded
        expanding.append("excluded_skus")
        log.info(f"Excluding {len(excluded)} products from migration: {', '.join(excluded)}")
    if entity_ids is not None:
        if not entity_ids:
            return []
        params["entity_ids"] = list(entity_ids)
        expanding.append("entity_ids")

    sql = build_products_query(attribute_ids, bool(excluded), entity_ids is not None)
    rows = source_db.query(sql, params, expanding=expanding)
    _merge_url_keys(source_db, rows, attribute_ids.get("url_key"))

    products = [SourceProduct.from_row(r) for r in rows]
    log.info(f"Fetched {len(products)} products from source")
    return products


def _merge_url_keys(source_db, rows: List[Dict[str, Any]], attribute_id: Optional[int]) -> None:
    """EAV url_key wins over the flat one; kept out of the grouped query so rows don't multiply."""
    if not rows or attribute_id is None:
        return
    url_keys = source_db.query(
        URL_KEYS_SQL,
        {"attribute_id": attribute_id, "ids": [r["entity_id"] for r in rows]},
        expanding=["ids"],
    )
    by_entity = {u["entity_id"]: u["url_key"] for u in url_keys if u["url_key"]}
    for row in rows:
        if row["entity_id"] in by_entity:
            row["url_key"] = by_entity[row["entity_id"]]
