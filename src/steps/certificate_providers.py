# =========================================
# 📄 File: src/steps/certificate_providers.py
# Purpose: Reference rows products point at
# - certificate providers (PMG, PCGS, NGC, Uncertified, Other)
# - three standard badges per provider + English badge translations
# - provider translations for PMG and Other
# - product <-> provider badge links
# Everything is check-then-insert, so repeated runs add nothing.
# =========================================

import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

log = logging.getLogger(__name__)

# name -> logo file under <provider_image_base_url>//Grading%20Services/
PROVIDERS = {
    "PMG": "pmg.png",
    "PCGS": "pcgs.png",
    "NGC": "ngc.png",
    "Uncertified": None,
    "Other": None,
}

STANDARD_BADGES = [
    {"name": "Gold shield", "description": "Premium certification shield"},
    {"name": "NFC technology", "description": "Near Field Communication enabled"},
    {"name": "True View images", "description": "High-resolution magnification technology"},
]

PROVIDER_TRANSLATIONS = {
    "PMG": {
        "description": "Professional Coin Grading Service",
        "authenticity": "PMG certified authenticity",
        "our_grade": "PMG grading standards",
    },
    "Other": {
        "description": "Other grading service",
        "authenticity": "Alternative certification",
        "our_grade": "Various grading standards",
    },
}


def provider_image_url(base_url: Optional[str], filename: Optional[str]) -> Optional[str]:
    if not filename or not base_url:
        return None
    return f"{base_url.rstrip('/')}//Grading%20Services/{filename}"


def ensure_certificate_providers(target_db, provider_image_base_url: Optional[str], language_id: Any) -> Dict[str, Any]:
    """Create any missing provider, then badges and translations. Returns name -> id."""
    log.info("Ensuring certificate providers exist...")
    existing = {r["name"]: r["id"] for r in target_db.query("SELECT id, name FROM certificate_providers")}

    for name, logo in PROVIDERS.items():
        if name in existing:
            log.debug(f"{name} certificate provider already exists")
            continue
        provider_id = str(uuid.uuid4())
        target_db.execute(
            "INSERT INTO certificate_providers (id, name, image, created_at, updated_at) "
            "VALUES (:id, :name, :image, NOW(), NOW())",
            {"id": provider_id, "name": name, "image": provider_image_url(provider_image_base_url, logo)},
        )
        existing[name] = provider_id
        log.info(f"Created {name} certificate provider")

    ensure_provider_badges(target_db, existing, language_id)
    ensure_provider_translations(target_db, existing, language_id)
    log.info("✅ Certificate providers ensured")
    return existing


def ensure_provider_badges(target_db, providers: Dict[str, Any], language_id: Any) -> int:
    """Providers that already own any badge are left alone."""
    with_badges = {r["certificate_provider_id"] for r in target_db.query(
        "SELECT DISTINCT certificate_provider_id FROM certificate_provider_badges"
    )}

    created = 0
    for name, provider_id in providers.items():
        if not provider_id or provider_id in with_badges:
            continue
        badges, translations = [], []
        for badge in STANDARD_BADGES:
            badge_id = str(uuid.uuid4())
            badges.append({"id": badge_id, "icon": None, "certificate_provider_id": provider_id})
            translations.append({
                "id": str(uuid.uuid4()),
                "name": badge["name"],
                "description": badge["description"],
                "certificate_provider_badge_id": badge_id,
                "language_id": language_id,
            })
        target_db.insert("certificate_provider_badges", badges)
        target_db.insert("certificate_provider_badge_translations", translations)
        created += len(badges)
        log.info(f"Created {len(badges)} badges for provider {name}: {', '.join(b['name'] for b in STANDARD_BADGES)}")
    return created


def ensure_provider_translations(target_db, providers: Dict[str, Any], language_id: Any) -> int:
    wanted = {providers[name]: name for name in PROVIDER_TRANSLATIONS if providers.get(name)}
    if not wanted:
        log.warning("PMG or Other certificate providers not found")
        return 0

    have = {r["certificate_provider_id"] for r in target_db.query(
        "SELECT certificate_provider_id FROM certificate_provider_translations "
        "WHERE certificate_provider_id IN :ids AND language_id = :lang",
        {"ids": list(wanted), "lang": language_id},
        expanding=["ids"],
    )}

    rows = [
        dict(
            PROVIDER_TRANSLATIONS[name],
            id=str(uuid.uuid4()),
            note_on_taxes=None,
            certificate_provider_id=provider_id,
            language_id=language_id,
        )
        for provider_id, name in wanted.items()
        if provider_id not in have
    ]
    if rows:
        target_db.insert("certificate_provider_translations", rows)
        log.info(f"Created {len(rows)} certificate provider translations")
    return len(rows)


def link_product_badges(target_db, product_ids: Iterable[Any]) -> int:
    """Attach each product to every badge of its provider, skipping existing links."""
    ids = list(product_ids)
    if not ids:
        return 0

    products = target_db.query(
        "SELECT id, certificate_provider_id, created_at FROM products "
        "WHERE id IN :ids AND certificate_provider_id IS NOT NULL",
        {"ids": ids},
        expanding=["ids"],
    )
    if not products:
        return 0

    badges_by_provider: Dict[Any, List[Any]] = defaultdict(list)
    for badge in target_db.query("SELECT id, certificate_provider_id FROM certificate_provider_badges"):
        badges_by_provider[badge["certificate_provider_id"]].append(badge["id"])

    existing = {
        (r["product_id"], r["certificate_provider_badge_id"])
        for r in target_db.query(
            "SELECT product_id, certificate_provider_badge_id FROM product_certificate_provider_badges "
            "WHERE product_id IN :ids",
            {"ids": [p["id"] for p in products]},
            expanding=["ids"],
        )
    }

    links = []
    for product in products:
        for badge_id in badges_by_provider.get(product["certificate_provider_id"], []):
            if (product["id"], badge_id) in existing:
                continue
            links.append({
                "id": str(uuid.uuid4()),
                "is_active": True,
                "created_at": product["created_at"],
                "certificate_provider_badge_id": badge_id,
                "product_id": product["id"],
            })
    return target_db.insert("product_certificate_provider_badges", links)
