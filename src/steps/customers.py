# =========================================
# 📄 File: src/steps/customers.py
# Purpose: Stage 8 - customers -> users, customer addresses -> addresses
# - one LEFT JOIN fetch, grouped per customer with pandas
# - existing emails are never overwritten; addresses dedupe on (user, line, postcode)
# - password-reset email export (CSV) at the end
# =========================================

import logging
import os
from typing import Any, Dict, List

import pandas as pd

from src.pipeline.stage import Counters, Stage, stage_result
from src.transform.records import SourceAddress, SourceCustomer, group_joined_rows, record_from_prefixed

log = logging.getLogger(__name__)

CUSTOMERS_SQL = """
    SELECT
        ce.entity_id AS customer_entity_id,
        ce.email AS customer_email,
        ce.firstname AS customer_firstname,
        ce.lastname AS customer_lastname,
        ce.middlename AS customer_middlename,
        ce.is_active AS customer_is_active,
        ce.created_at AS customer_created_at,
        ce.updated_at AS customer_updated_at,
        cae.entity_id AS address_entity_id,
        cae.parent_id AS address_parent_id,
        cae.firstname AS address_firstname,
        cae.lastname AS address_lastname,
        cae.company AS address_company,
        cae.street AS address_street,
        cae.city AS address_city,
        cae.region AS address_region,
        cae.postcode AS address_postcode,
        cae.country_id AS address_country_id,
        cae.telephone AS address_telephone,
        cae.created_at AS address_created_at,
        cae.updated_at AS address_updated_at
    FROM customer_entity ce
    LEFT JOIN customer_address_entity cae ON ce.entity_id = cae.parent_id
    ORDER BY ce.entity_id, cae.entity_id
"""

EXPORT_SQL = """
    SELECT email, first_name, last_name, user_code
    FROM users
    WHERE type = 'CUSTOMER' AND email IS NOT NULL
    ORDER BY email
"""

FALLBACK_COUNTRY = "US"


def build_customers(rows: List[Dict[str, Any]]) -> List[SourceCustomer]:
    customers = []
    for group in group_joined_rows(rows, "customer_entity_id"):
        customer = record_from_prefixed(SourceCustomer, group[0], "customer_")
        customer.addresses = [
            record_from_prefixed(SourceAddress, row, "address_")
            for row in group
            if row.get("address_entity_id") is not None
        ]
        customers.append(customer)
    return customers


def address_key(row: Dict[str, Any]):
    return row["user_id"], row["address_line"] or "", row["post_code"] or ""


class CustomersStep(Stage):
    name = "customers"
    description = "Customers and addresses"

    def run(self) -> Dict[str, Any]:
        log.info("Starting customers migration step...")
        language_id = self.require_default_language()

        rows = self.source_db.query(CUSTOMERS_SQL)
        if not rows:
            log.warning("No customers found in source database")
            return stage_result(count=0)
        customers = build_customers(rows)
        log.info(f"Grouped {len(rows)} customer-address rows into {len(customers)} customers")

        counters = Counters("users", "addresses", "existing")
        result = self.batch_processor().process(
            customers, lambda batch, idx: self.process_batch(batch, language_id, counters)
        )
        exported = self.export_customer_emails()

        stats = counters.as_dict()
        log.info(
            f"✅ Customers migration completed: {stats['users']} new users ({stats['existing']} existing), "
            f"{stats['addresses']} addresses, {result['failed']} failed"
        )
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"], exported=exported, **stats
        )

    def process_batch(self, batch: List[SourceCustomer], language_id: Any, counters: Counters) -> Dict[str, int]:
        valid = [c for c in batch if c.email]
        if len(valid) < len(batch):
            log.debug(f"{len(batch) - len(valid)} customers without email skipped")

        emails = sorted({c.email for c in valid})
        existing = self._user_ids_by_email(emails)

        new_users, seen = [], set()
        for customer in valid:
            if customer.email in existing or customer.email in seen:
                continue
            seen.add(customer.email)
            new_users.append(self.context.transformer.transform_customer(customer, language_id))
        self.target_db.insert_ignore("users", new_users)

        user_ids = self._user_ids_by_email(emails)
        counters.add(users=len(new_users), existing=len(existing))
        counters.add(addresses=self.migrate_addresses(valid, user_ids))
        return {"success": len(valid), "failed": len(batch) - len(valid)}

    def _user_ids_by_email(self, emails: List[str]) -> Dict[str, Any]:
        if not emails:
            return {}
        rows = self.target_db.query(
            "SELECT id, email FROM users WHERE email IN :emails", {"emails": emails}, expanding=["emails"]
        )
        return {r["email"]: r["id"] for r in rows}

    def migrate_addresses(self, customers: List[SourceCustomer], user_ids: Dict[str, Any]) -> int:
        resolver = self.context.resolver
        transformer = self.context.transformer
        resolver.prime_countries(a.country_id for c in customers for a in c.addresses if a.country_id)

        candidates = []
        for customer in customers:
            user_id = user_ids.get(customer.email)
            if user_id is None:
                continue
            for address in customer.addresses:
                country_id = resolver.country_id(address.country_id) or resolver.country_id(FALLBACK_COUNTRY)
                if country_id is None:
                    log.debug(f"No country for address {address.entity_id}; skipped")
                    continue
                candidates.append(transformer.transform_customer_address(address, user_id, country_id))
        if not candidates:
            return 0

        existing = {
            address_key(r)
            for r in self.target_db.query(
                "SELECT user_id, address_line, post_code FROM addresses WHERE user_id IN :ids",
                {"ids": sorted({c["user_id"] for c in candidates}, key=str)},
                expanding=["ids"],
            )
        }
        rows = []
        for row in candidates:
            key = address_key(row)
            if key not in existing:
                existing.add(key)
                rows.append(row)
        return self.target_db.insert("addresses", rows)

    def export_customer_emails(self) -> int:
        path = (self.cfg.get("exports") or {}).get("customer_emails_csv")
        if not path:
            return 0
        df = pd.DataFrame(self.target_db.query(EXPORT_SQL), columns=["email", "first_name", "last_name", "user_code"])
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        df.to_csv(path, index=False)
        log.info(f"Exported {len(df)} customer emails for password reset to {path}")
        return len(df)
