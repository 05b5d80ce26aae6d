# =========================================
# 📄 File: src/transform/data_transformer.py
# Purpose: Turn typed source records into target-shaped rows
# - category / category translation
# - product / product translation / price / image (the EAV-heavy case)
# - order tree (guest, order customer, price, order, items, shipping address)
# - customer (user) and customer address
# - blog post -> content / content translation
# Foreign keys are resolved through ReferenceResolver; no writes happen here.
# =========================================

import html
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.transform import grading
from src.transform.records import (
    SourceAddress,
    SourceBlogPost,
    SourceCategory,
    SourceCustomer,
    SourceOrder,
    SourceProduct,
)
from src.transform.slugs import ascii_slug, category_code, product_identity, product_web_sku

log = logging.getLogger(__name__)

COUNTRIES_FILE = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "..", "..", "config", "countries-data.json"
)

FALLBACK_COUNTRY_MAPPING = {
    "Australia": "AU",
    "Canada": "CA",
    "United States": "US",
    "United Kingdom": "GB",
    "Germany": "DE",
    "France": "FR",
}

ALPHA3_TO_ALPHA2 = {
    "AUS": "AU", "GBR": "GB", "CAN": "CA", "USA": "US", "DEU": "DE", "ZAF": "ZA",
    "MEX": "MX", "IND": "IN", "NLD": "NL", "NZL": "NZ", "SAU": "SA", "FJI": "FJ",
}

NULL_SENTINELS = {"", "NULL", "null", "None", "none"}

CERTIFICATION_TYPES = {"4": "PCGS", "5": "NGC", "262": "PMG", "6": "Other"}
UNCERTIFIED = "Uncertified"

ORDER_STATUS_MAP = {
    "a_complete": "COMPLETE",
    "complete": "COMPLETE",
    "canceled": "CANCELED",
    "closed": "CANCELED",
    "pending": "PENDING",
    "paid_to_ship_later": "ON_HOLD",
}

BLOG_NAMESPACE = uuid.UUID("1b671a64-40d5-491e-99b0-da01ff1f3341")
BLOG_IMAGE_PREFIX = "mageplaza/blog/post/"
MEDIA_PLACEHOLDER = re.compile(r"\{\{media url=[\"']([^\"'}]+)[\"']\}\}")

DESCRIPTION_TEMPLATE = (
    '<div class="tiptap-summary"><p><span style="color: rgb(0, 0, 0)">{}</span></p></div>'
)


def load_country_mapping(path: str = COUNTRIES_FILE) -> Dict[str, str]:
    """
    name -> ISO alpha-2 from the countries data file (a list, or {"countries": [...]}).
    Any read/parse problem falls back to a small built-in mapping.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        countries = data if isinstance(data, list) else (data or {}).get("countries")
        if not isinstance(countries, list):
            raise ValueError("countries data does not contain a countries array")
        mapping = {c["name"]: c["iso2"] for c in countries if isinstance(c, dict) and c.get("name") and c.get("iso2")}
        mapping["United States"] = "US"
        log.debug(f"Loaded {len(mapping)} countries from {path}")
        return mapping
    except (OSError, ValueError) as e:
        log.error(f"Failed to load country mapping from {path}: {e}")
        return dict(FALLBACK_COUNTRY_MAPPING)


def map_order_status(status: Optional[str], state: Optional[str] = None) -> str:
    return ORDER_STATUS_MAP.get(status or "") or ORDER_STATUS_MAP.get(state or "") or "PENDING"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def split_street(street: Optional[str]) -> Tuple[str, Optional[str], Optional[str]]:
    lines = [line for line in (street or "").split("\n") if line.strip()]
    return (
        lines[0] if lines else "",
        lines[1] if len(lines) > 1 else None,
        lines[2] if len(lines) > 2 else None,
    )


class DataTransformer:
    def __init__(self, resolver=None, countries_path: str = COUNTRIES_FILE, media: Optional[Dict[str, str]] = None):
        self.resolver = resolver
        self.country_mapping = load_country_mapping(countries_path)
        self.media = media or {}

    # -----------------------
    # Categories
    # -----------------------
    def transform_category(self, category: SourceCategory) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "code": category_code(category.url_key, category.parent_id, category.entity_id),
            "sort": int(_num(category.position)),
            "is_hidden": str(category.is_active) == "0",
            "parent_id": None,  # linked after all batches, see CategoriesStep
            "created_at": category.created_at or _now(),
            "updated_at": category.updated_at or _now(),
        }

    def transform_category_translation(self, category: SourceCategory, category_id: Any, language_id: Any) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "category_id": category_id,
            "language_id": language_id,
            "title": category.name or "",
            "slug": category.url_key or f"category-{category.entity_id}",
            "description": category.description,
            "parent_slugs": None,
            "meta_title": category.meta_title,
            "meta_description": category.meta_description,
            "meta_keywords": category.meta_keywords,
            "created_at": category.created_at or _now(),
            "updated_at": category.updated_at or _now(),
        }

    # -----------------------
    # Products
    # -----------------------
    def resolve_country_code(self, product: SourceProduct) -> Optional[str]:
        """Option label -> flat label -> country_of_manufacture; first usable value wins."""
        raw = None
        for candidate in (product.country_int, product.country_value, product.country_of_manufacture):
            if candidate is not None and str(candidate).strip() not in NULL_SENTINELS:
                raw = str(candidate).strip()
                break
        if raw is None:
            log.debug(f"No country for product {product.product_sku}")
            return None

        if len(raw) == 2:
            code = raw.upper()
        elif len(raw) == 3:
            code = ALPHA3_TO_ALPHA2.get(raw.upper())
        else:
            code = self.country_mapping.get(raw)

        if code:
            log.debug(f"Mapped country for product {product.product_sku}: {raw!r} -> {code}")
        else:
            log.debug(f"Failed to map country for product {product.product_sku}: {raw!r}")
        return code

    @staticmethod
    def certificate_provider_name(product: SourceProduct) -> Optional[str]:
        """Known certification type -> provider; otherwise Uncertified only when a cert number exists."""
        cert_type = str(product.certification_type).strip() if product.certification_type not in (None, "") else ""
        if cert_type in CERTIFICATION_TYPES:
            return CERTIFICATION_TYPES[cert_type]
        if product.certification_number and str(product.certification_number).strip():
            return UNCERTIFIED
        return None

    @staticmethod
    def resolve_grade(product: SourceProduct) -> Tuple[Optional[str], Any, Optional[str]]:
        """EAV prefix/value/suffix, filled from meta_title when the prefix is empty."""
        prefix = product.grade_prefix or None
        value = product.grade_value if product.grade_value not in ("", None) else None
        suffix = product.grade_suffix or None

        if (not prefix or not prefix.strip()) and product.meta_title:
            parsed = grading.parse_grade_from_meta_title(product.meta_title)
            if parsed:
                prefix = parsed["prefix"] or prefix
                suffix = parsed["suffix"] or suffix
                if not value and parsed["value"]:
                    value = parsed["value"]
        return prefix, value, suffix

    def transform_product(self, product: SourceProduct) -> Dict[str, Any]:
        web_sku = product_web_sku(product.product_sku, product.created_at)
        prefix, grade_value, suffix = self.resolve_grade(product)
        grade_number = grading.to_float(grade_value)

        provider_name = self.certificate_provider_name(product)
        provider_id = None
        if provider_name and self.resolver:
            provider_id = self.resolver.certificate_provider_id(provider_name)
            if provider_id is None:
                log.debug(f"Certificate provider {provider_name} missing in target for {product.product_sku}")

        iso2 = self.resolve_country_code(product)
        country_id = self.resolver.country_id(iso2) if (iso2 and self.resolver) else None

        xero_account_id, xero_tenant_id = (None, None)
        if self.resolver:
            xero_account_id, xero_tenant_id = self.resolver.xero_account(product.xero_sale_account)

        return {
            "id": str(uuid.uuid4()),
            "product_identity": product_identity(product.product_sku, product.entity_id),
            "product_sku": product.product_sku,
            "product_web_sku": web_sku,
            "cert_number": product.certification_number or None,
            "coin_video": None,
            "is_coin_video": False,
            "coin_number": product.coin_number or None,
            "coin_our_grade": grading.convert_to_10_point_scale(grade_value),
            "coin_grade_type": str(int(grade_number)) if grade_number else None,
            "coin_grade_prefix": prefix,
            "coin_grade_suffix": suffix,
            "coin_grade": grade_number or None,
            "coin_grade_text": grading.build_grade_text(prefix, grade_value, suffix),
            "year_text": grading.parse_valid_year(product.year, product.sort_string, product.name),
            "coin_grade_prefix_type": prefix,
            "year_date": grading.parse_valid_year_date(product.year, product.sort_string, product.name),
            "is_second_hand": False,
            "is_consignment": False,
            "is_active": grading.is_flag_set(product.status) and str(product.visibility).strip() in ("2", "4"),
            "is_on_hold": False,
            "status": grading.determine_product_status(product.archived_status, product.eav_sold_date, product.sold_date),
            "quantity": 1,
            "price": _num(product.price),
            "sold_date": product.eav_sold_date or product.sold_date or None,
            "archived_at": grading.calculate_archived_at(product.archived_status, product.eav_sold_date, product.sold_date),
            "sold_price": product.eav_sold_price or product.last_sold_price or None,
            "discount_price": None,
            "ebay_offer_code": None,
            "stars": 0,
            "created_at": product.created_at,
            "updated_at": product.updated_at or product.created_at,
            "deleted_at": None,
            "product_master_image_id": None,
            "certificate_provider_id": provider_id,
            "master_category_id": None,
            "xero_account_id": xero_account_id,
            "xero_tenant_id": xero_tenant_id,
            "country_id": country_id,
        }

    def transform_product_translation(self, product: SourceProduct, web_sku: str, language_id: Any) -> Dict[str, Any]:
        """product_id temporarily carries the web SKU; the step swaps in products.id."""
        title = product.name or product.product_sku
        description = product.description
        if description and description.strip():
            description = DESCRIPTION_TEMPLATE.format(description)
        return {
            "id": str(uuid.uuid4()),
            "product_id": web_sku,
            "language_id": language_id,
            "title": title,
            "slug": product.url_key or ascii_slug(title),
            "description": description,
            "short_description": product.short_description,
            "meta_title": product.meta_title or None,
            "meta_description": product.meta_description or None,
            "meta_keywords": None,
            "created_at": product.created_at,
            "updated_at": product.updated_at or product.created_at,
        }

    def transform_products(self, products: List[SourceProduct], language_id: Any):
        out_products, out_translations = [], []
        for product in products:
            row = self.transform_product(product)
            out_products.append(row)
            out_translations.append(self.transform_product_translation(product, row["product_web_sku"], language_id))
        return out_products, out_translations

    @staticmethod
    def transform_price(product_id: Any, aud_price: Any, currency: Dict[str, Any], rate: Any) -> Dict[str, Any]:
        base = _num(aud_price)
        return {
            "id": str(uuid.uuid4()),
            "product_id": product_id,
            "currency_id": currency["id"],
            "currency_code": currency["code"],
            "base_amount": base,
            "amount": round(base * _num(rate, 1.0), 2),
            "created_at": _now(),
            "updated_at": _now(),
        }

    def image_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        base = (self.media.get("cdn_base_url") or "").rstrip("/")
        if path.startswith("http://") or path.startswith("https://") or not base:
            return path
        return f"{base}/{path.lstrip('/')}"

    def transform_images(self, product_id: Any, gallery: List[Dict[str, Any]], alt: Optional[str]) -> List[Dict[str, Any]]:
        """
        Master = the image whose source position is 1, else the first one in gallery order.
        A missing position is stored as 1 but never makes an image the master.
        """
        rows, master = [], None
        for entry in gallery:
            try:
                position = int(entry.get("position"))
            except (TypeError, ValueError):
                position = None
            rows.append({
                "id": str(uuid.uuid4()),
                "product_id": product_id,
                "image_url": self.image_url(entry.get("value")),
                "alt": entry.get("label") or alt,
                "position": 1 if position is None else position,
                "is_master": False,
                "created_at": _now(),
                "updated_at": _now(),
            })
            if master is None and position == 1:
                master = rows[-1]
        if rows:
            (master or rows[0])["is_master"] = True
        return rows

    # -----------------------
    # Orders
    # -----------------------
    def transform_order(
        self,
        order: SourceOrder,
        user_id: Any,
        product_id_for_sku: Callable[[str], Any],
        country_id_for_iso: Callable[[Optional[str]], Any],
        currency_id_for_code: Callable[[Optional[str]], Any],
    ) -> Dict[str, Any]:
        """
        Build every row of one order tree. user_id=None means the order is written as a guest.
        Items whose SKU has no migrated product are dropped.
        """
        created, updated = order.created_at or _now(), order.updated_at or order.created_at or _now()
        first, last = order.customer_firstname or "", order.customer_lastname or ""

        guest = None
        if user_id is None:
            guest = {
                "id": str(uuid.uuid4()),
                "email": order.customer_email,
                "first_name": first,
                "last_name": last,
                "phone": None,
                "phone_code": None,
                "user_agent": None,
                "device": None,
                "device_type": None,
                "device_model": None,
                "ip_address": None,
                "guest_uuid": str(uuid.uuid4()),
                "created_at": created,
                "updated_at": updated,
            }

        order_customer = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "guest_id": guest["id"] if guest else None,
            "first_name": first,
            "last_name": last,
            "email": order.customer_email,
            "phone": None,
            "phone_code": None,
            "type": "LOGIN_USER" if user_id else "GUEST",
            "created_at": created,
            "updated_at": updated,
        }

        currency_code = order.order_currency_code or "USD"
        order_price = {
            "id": str(uuid.uuid4()),
            "total_amount": _num(order.grand_total),
            "subtotal_fee": _num(order.subtotal),
            "shipping_fee": _num(order.shipping_amount),
            "discount_fee": _num(order.discount_amount),
            "insurance_fee": 0,
            "purchase_method_fee": 0,
            "additional_fee": 0,
            "currency_id": currency_id_for_code(order.order_currency_code) or currency_id_for_code("USD"),
            "currency_code": currency_code,
            "additional_fee_description": None,
            "final_price": _num(order.grand_total),
            "created_at": created,
            "updated_at": updated,
        }

        order_row = {
            "id": str(uuid.uuid4()),
            "order_no": str(order.increment_id),
            "order_customer_id": order_customer["id"],
            "order_price_id": order_price["id"],
            "status": map_order_status(order.status, order.state),
            "payment_method": "BANK_TRANSFER",
            "shipping_method": "STANDARD",
            "tracking_number": None,
            "invoice_no": None,
            "invoice_url": None,
            "order_manual_id": None,
            "comment": None,
            "note": None,
            "is_insurance": False,
            "is_send_order_confirmation_email": True,
            "invoice_date": None,
            "created_at": created,
            "updated_at": updated,
        }

        items = []
        for item in order.items:
            product_id = product_id_for_sku(item.sku)
            if not product_id:
                log.debug(f"Order {order.entity_id} item {item.item_id}: product {item.sku} not found, skipping")
                continue
            qty = int(_num(item.qty_ordered, 1)) or 1
            items.append({
                "id": str(uuid.uuid4()),
                "order_id": order_row["id"],
                "product_id": product_id,
                "quantity": qty,
                "price": _num(item.price),
                "provider_name": None,
                "provider_image": None,
                "coin_degree": None,
                "created_at": created,
                "updated_at": updated,
            })

        address = order.shipping_address
        line1, _, _ = split_street(address.street)
        shipping_address = {
            "id": str(uuid.uuid4()),
            "order_id": order_row["id"],
            "first_name": address.firstname or "",
            "last_name": address.lastname or "",
            "company_name": address.company,
            "phone": address.telephone,
            "phone_code": None,
            "address_line": line1,
            "address_line2": None,
            "address_line3": None,
            "post_code": address.postcode,
            "town": address.city,
            "city_name": address.city,
            "country_id": country_id_for_iso(address.country_id) or country_id_for_iso("US"),
            "created_at": created,
            "updated_at": updated,
        }

        return {
            "guest": guest,
            "order_customer": order_customer,
            "order_price": order_price,
            "order": order_row,
            "items": items,
            "shipping_address": shipping_address,
        }

    # -----------------------
    # Customers
    # -----------------------
    @staticmethod
    def transform_customer(customer: SourceCustomer, language_id: Any) -> Dict[str, Any]:
        first = (customer.firstname or "") + (f" {customer.middlename}" if customer.middlename else "")
        return {
            "id": str(uuid.uuid4()),
            "user_code": f"CUST-{customer.entity_id}",
            "email": customer.email,
            "first_name": first,
            "last_name": customer.lastname or "",
            "company_name": None,
            "phone": None,
            "phone_code": None,
            "password": None,
            "is_view_price": True,
            "is_approved_for_credit_card": False,
            "is_approved_for_mailing": False,
            "is_locked_account": str(customer.is_active) == "0",
            "type": "CUSTOMER",
            "created_at": customer.created_at or _now(),
            "updated_at": customer.updated_at or customer.created_at or _now(),
            "last_signed_in": None,
            "signout": False,
            "is_subscribe_email": False,
            "language_id": language_id,
            "is_mailchimp_subscribed": False,
        }

    @staticmethod
    def transform_customer_address(address: SourceAddress, user_id: Any, country_id: Any) -> Dict[str, Any]:
        line1, line2, line3 = split_street(address.street)
        return {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "first_name": address.firstname or "",
            "last_name": address.lastname or "",
            "company_name": address.company,
            "phone": address.telephone,
            "phone_code": None,
            "address_line": line1,
            "address_line2": line2,
            "address_line3": line3,
            "post_code": address.postcode,
            "state_province": address.region,
            "town": address.city,
            "city_name": address.city,
            "is_default": False,
            "country_id": country_id,
            "created_at": address.created_at or _now(),
            "updated_at": address.updated_at or address.created_at or _now(),
        }

    # -----------------------
    # Blog posts -> contents
    # -----------------------
    def process_media_urls(self, content: Optional[str]) -> str:
        """Unescape HTML entities, then point {{media url="..."}} placeholders at the blog image base."""
        if not content:
            return ""
        text = html.unescape(content)
        base = (self.media.get("blog_image_base_url") or "").rstrip("/")

        def repl(match):
            filename = re.sub(r"^wysiwyg/", "", match.group(1)).lstrip("/").strip()
            return f"{base}/{filename}"

        return MEDIA_PLACEHOLDER.sub(repl, text)

    def transform_blog_post(self, post: SourceBlogPost, language_id: Any):
        content_id = str(uuid.uuid5(BLOG_NAMESPACE, str(post.post_id)))
        image = None
        if post.image:
            base = (self.media.get("blog_image_base_url") or "").rstrip("/")
            image = f"{base}/{post.image.replace(BLOG_IMAGE_PREFIX, '')}"
        created = grading.to_datetime(post.created_at) or _now()
        updated = grading.to_datetime(post.updated_at) or created

        content = {
            "id": content_id,
            "sort": int(_num(post.post_id)),
            "image": image,
            "type": "news",
            "published": True,
            "is_allowed": True,
            "created_at": created,
            "updated_at": updated,
        }
        translation = {
            "id": str(uuid.uuid5(BLOG_NAMESPACE, f"translation-{post.post_id}")),
            "content_id": content_id,
            "language_id": language_id,
            "title": post.name or "",
            "slug": re.sub(r"[^a-z0-9-]", "", post.url_key.lower()) if post.url_key else None,
            "description": self.process_media_urls(post.post_content),
            "meta_title": post.meta_title or None,
            "meta_description": post.meta_description or None,
            "meta_keywords": post.meta_keywords or None,
            "created_at": created,
            "updated_at": updated,
        }
        return content, translation
