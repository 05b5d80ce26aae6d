# =========================================
# 📄 File: src/steps/orders.py
# Purpose: Stage 9 - orders as one nested tree per source order
#   guest? -> order_customer -> order_price -> order (ON CONFLICT order_no)
#   -> order_items -> order_shipping_address (ON CONFLICT order_id)
# Each tree is written in one target transaction. Orders already in the target
# only get status + shipping address refreshed.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Counters, Stage, stage_result
from src.transform.grading import is_flag_set
from src.transform.records import (
    SourceAddress,
    SourceOrder,
    SourceOrderItem,
    group_joined_rows,
    record_from_prefixed,
)

log = logging.getLogger(__name__)

ORDERS_SQL = """
    SELECT
        so.entity_id AS order_entity_id,
        so.increment_id AS order_increment_id,
        so.customer_id AS order_customer_id,
        so.customer_is_guest AS order_customer_is_guest,
        so.customer_email AS order_customer_email,
        so.customer_firstname AS order_customer_firstname,
        so.customer_lastname AS order_customer_lastname,
        so.grand_total AS order_grand_total,
        so.subtotal AS order_subtotal,
        so.shipping_amount AS order_shipping_amount,
        so.tax_amount AS order_tax_amount,
        so.discount_amount AS order_discount_amount,
        so.status AS order_status,
        so.state AS order_state,
        so.created_at AS order_created_at,
        so.updated_at AS order_updated_at,
        so.order_currency_code AS order_order_currency_code,
        soi.item_id AS item_item_id,
        soi.product_id AS item_product_id,
        soi.sku AS item_sku,
        soi.name AS item_name,
        soi.qty_ordered AS item_qty_ordered,
        soi.price AS item_price,
        soi.base_price AS item_base_price,
        soi.row_total AS item_row_total,
        soa.entity_id AS address_entity_id,
        soa.parent_id AS address_parent_id,
        soa.address_type AS address_address_type,
        soa.firstname AS address_firstname,
        soa.lastname AS address_lastname,
        soa.company AS address_company,
        soa.street AS address_street,
        soa.city AS address_city,
        soa.region AS address_region,
        soa.postcode AS address_postcode,
        soa.country_id AS address_country_id,
        soa.telephone AS address_telephone,
        soa.email AS address_email
    FROM sales_order so
    LEFT JOIN sales_order_item soi ON so.entity_id = soi.order_id
    LEFT JOIN sales_order_address soa ON so.entity_id = soa.parent_id AND soa.address_type = 'shipping'
    WHERE so.status NOT IN ('canceled', 'closed')
    ORDER BY so.entity_id, soi.item_id, soa.entity_id
"""

ORDER_UPDATE_COLS = ["order_customer_id", "order_price_id", "status"]
SHIPPING_UPDATE_COLS = [
    "first_name", "last_name", "company_name", "phone", "phone_code", "address_line", "address_line2",
    "address_line3", "post_code", "town", "city_name", "country_id",
]


def build_orders(rows: List[Dict[str, Any]]) -> List[SourceOrder]:
    orders = []
    for group in group_joined_rows(rows, "order_entity_id"):
        order = record_from_prefixed(SourceOrder, group[0], "order_")
        seen_items = set()
        for row in group:
            item_id = row.get("item_item_id")
            if item_id is not None and item_id not in seen_items:
                seen_items.add(item_id)
                order.items.append(record_from_prefixed(SourceOrderItem, row, "item_"))
            if order.shipping_address is None and row.get("address_entity_id") is not None:
                order.shipping_address = record_from_prefixed(SourceAddress, row, "address_")
        orders.append(order)
    return orders


def is_migratable(order: SourceOrder) -> bool:
    return bool(order.increment_id and order.customer_email and order.items and order.shipping_address)


class OrdersStep(Stage):
    name = "orders"
    description = "Orders with items and shipping addresses"

    def run(self) -> Dict[str, Any]:
        log.info("Starting orders migration step...")
        rows = self.source_db.query(ORDERS_SQL)
        if not rows:
            log.warning("No orders found in source database")
            return stage_result(count=0)

        orders = build_orders(rows)
        log.info(f"Grouped {len(rows)} order-item-address rows into {len(orders)} orders")

        self.users_by_code = {
            r["user_code"]: r["id"]
            for r in self.target_db.query("SELECT id, user_code FROM users WHERE type = 'CUSTOMER'")
        }
        self.products_by_sku = self.context.resolver.product_ids_by_sku()
        self.counters = Counters("orders", "refreshed", "guests", "items", "addresses", "skipped")
        for order in orders:
            if not is_migratable(order):
                log.debug(f"Order {order.entity_id} skipped: missing increment id, email, items or shipping address")
                self.counters.add(skipped=1)

        result = self.batch_processor().process(orders, lambda batch, idx: self.process_batch(batch))
        stats = self.counters.as_dict()
        log.info(
            f"✅ Orders migration completed: {stats['orders']} new orders, {stats['refreshed']} refreshed, "
            f"{stats['guests']} guests, {stats['items']} items, {stats['addresses']} addresses, "
            f"{stats['skipped']} skipped, {result['failed']} failed"
        )
        return stage_result(success=result["failed"] == 0, count=result["success"], failed=result["failed"], **stats)

    def process_batch(self, batch: List[SourceOrder]) -> Dict[str, int]:
        valid = [o for o in batch if is_migratable(o)]
        if not valid:
            return {"success": len(batch), "failed": 0}

        resolver = self.context.resolver
        resolver.prime_countries(o.shipping_address.country_id for o in valid if o.shipping_address.country_id)
        existing = {
            r["order_no"]: r["id"]
            for r in self.target_db.query(
                "SELECT id, order_no FROM orders WHERE order_no IN :nos",
                {"nos": [str(o.increment_id) for o in valid]},
                expanding=["nos"],
            )
        }

        tallies = Counters("orders", "refreshed", "guests", "items", "addresses")
        for order in valid:
            tree = self.context.transformer.transform_order(
                order,
                self.resolve_user(order),
                self.products_by_sku.get,
                resolver.country_id,
                resolver.currency_id,
            )
            order_no = tree["order"]["order_no"]
            # The whole tree commits or none of it does, so a retried batch never
            # finds a half-written order
            with self.target_db.transaction():
                if order_no in existing:
                    written = self.refresh_order(existing[order_no], tree)
                else:
                    written = self.write_order(tree)
            tallies.add(**written)
        # Added once the whole batch went through, so a retried batch is not counted twice
        self.counters.add(**tallies.as_dict())
        return {"success": len(batch), "failed": 0}

    def resolve_user(self, order: SourceOrder):
        """None means the order is written as a guest order."""
        if is_flag_set(order.customer_is_guest) or order.customer_id is None:
            return None
        return self.users_by_code.get(f"CUST-{order.customer_id}")

    def write_order(self, tree: Dict[str, Any]) -> Dict[str, int]:
        db = self.target_db
        if tree["guest"]:
            db.insert("guests", [tree["guest"]])
        db.insert("order_customers", [tree["order_customer"]])
        db.insert("order_prices", [tree["order_price"]])

        written = db.upsert(
            "orders", [tree["order"]], conflict_cols=["order_no"], update_cols=ORDER_UPDATE_COLS, returning=["id"]
        )
        order_id = written[0]["id"] if written else tree["order"]["id"]

        items = [dict(item, order_id=order_id) for item in tree["items"]]
        db.insert("order_items", items)
        self._upsert_shipping(dict(tree["shipping_address"], order_id=order_id))
        return {"orders": 1, "guests": 1 if tree["guest"] else 0, "items": len(items), "addresses": 1}

    def refresh_order(self, order_id: Any, tree: Dict[str, Any]) -> Dict[str, int]:
        self.target_db.execute(
            "UPDATE orders SET status = :status, updated_at = NOW() WHERE id = :id AND status IS DISTINCT FROM :status",
            {"status": tree["order"]["status"], "id": order_id},
        )
        self._upsert_shipping(dict(tree["shipping_address"], order_id=order_id))
        return {"refreshed": 1}

    def _upsert_shipping(self, address: Dict[str, Any]) -> None:
        self.target_db.upsert(
            "order_shipping_addresses", [address], conflict_cols=["order_id"], update_cols=SHIPPING_UPDATE_COLS
        )
