# =========================================
# 📄 File: src/transform/records.py
# Purpose: Typed views of the legacy source rows each stage reads
# Every field is optional; the transformer supplies the fallbacks.
# =========================================

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import pandas as pd


def _pick(cls, row: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    return {f.name: row.get(prefix + f.name) for f in fields(cls) if f.init and f.name not in ("items", "addresses", "shipping_address")}


@dataclass
class SourceCategory:
    entity_id: Any = None
    parent_id: Any = None
    name: Optional[str] = None
    url_key: Optional[str] = None
    description: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None
    is_active: Any = None
    position: Any = None
    level: Any = None
    path: Optional[str] = None
    created_at: Any = None
    updated_at: Any = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SourceCategory":
        return cls(**_pick(cls, row))


@dataclass
class SourceProduct:
    entity_id: Any = None
    product_sku: Optional[str] = None
    name: Optional[str] = None
    price: Any = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    image: Optional[str] = None
    url_key: Optional[str] = None
    created_at: Any = None
    updated_at: Any = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    certification_number: Optional[str] = None
    coin_number: Optional[str] = None
    grade_prefix: Optional[str] = None
    grade_value: Any = None
    grade_suffix: Optional[str] = None
    year: Any = None
    country_int: Optional[str] = None          # option label of the EAV `country` attribute
    country_value: Optional[str] = None        # flat table label
    country_of_manufacture: Optional[str] = None
    certification_type: Any = None
    archived_status: Any = None
    sold_date: Any = None                       # first sale across whitelisted orders
    last_sold_price: Any = None
    eav_sold_date: Any = None
    eav_sold_price: Any = None
    sort_string: Optional[str] = None
    status: Any = None
    visibility: Any = None
    category_ids: str = ""
    xero_sale_account: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SourceProduct":
        values = _pick(cls, row)
        values["category_ids"] = values.get("category_ids") or ""
        return cls(**values)

    def category_id_list(self) -> List[int]:
        return [int(c) for c in str(self.category_ids).split(",") if c.strip().isdigit()]


@dataclass
class SourceOrderItem:
    item_id: Any = None
    product_id: Any = None
    sku: Optional[str] = None
    name: Optional[str] = None
    qty_ordered: Any = None
    price: Any = None
    base_price: Any = None
    row_total: Any = None


@dataclass
class SourceAddress:
    entity_id: Any = None
    parent_id: Any = None
    address_type: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    company: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postcode: Optional[str] = None
    country_id: Optional[str] = None
    telephone: Optional[str] = None
    email: Optional[str] = None
    created_at: Any = None
    updated_at: Any = None


@dataclass
class SourceOrder:
    entity_id: Any = None
    increment_id: Optional[str] = None
    customer_id: Any = None
    customer_is_guest: Any = None
    customer_email: Optional[str] = None
    customer_firstname: Optional[str] = None
    customer_lastname: Optional[str] = None
    grand_total: Any = None
    subtotal: Any = None
    shipping_amount: Any = None
    tax_amount: Any = None
    discount_amount: Any = None
    status: Optional[str] = None
    state: Optional[str] = None
    created_at: Any = None
    updated_at: Any = None
    order_currency_code: Optional[str] = None
    items: List[SourceOrderItem] = field(default_factory=list)
    shipping_address: Optional[SourceAddress] = None


@dataclass
class SourceCustomer:
    entity_id: Any = None
    email: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    middlename: Optional[str] = None
    is_active: Any = None
    created_at: Any = None
    updated_at: Any = None
    addresses: List[SourceAddress] = field(default_factory=list)


@dataclass
class SourceBlogPost:
    post_id: Any = None
    name: Optional[str] = None
    short_description: Optional[str] = None
    post_content: Optional[str] = None
    url_key: Optional[str] = None
    image: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None
    publish_date: Any = None
    created_at: Any = None
    updated_at: Any = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SourceBlogPost":
        return cls(**_pick(cls, row))


def record_from_prefixed(cls, row: Dict[str, Any], prefix: str):
    """Build one nested record from a joined row whose columns carry a `<prefix>` alias."""
    return cls(**_pick(cls, row, prefix))


def group_joined_rows(rows: List[Dict[str, Any]], key: str) -> List[List[Dict[str, Any]]]:
    """
    Split a parent/child LEFT JOIN result into one list of rows per parent, in first-seen order.
    Missing values come back as None (never NaN/NaT); object dtype keeps ids as ints.
    """
    if not rows:
        return []
    df = pd.DataFrame(rows, dtype=object)
    df = df.where(pd.notna(df), None)
    return [group.to_dict("records") for _, group in df.groupby(key, sort=False)]
