# =========================================
# 📄 File: src/transform/slugs.py
# Purpose: Slug, natural-key and category-code helpers shared by stages
# =========================================

import calendar
import re
from typing import Any, Dict, Iterable, List, Optional

from src.transform.grading import to_datetime

_UNSAFE_CHARS = re.compile(r"[<>.\"',|?#%+\[\]{}]")
_SEPARATORS = re.compile(r"[\s_-]+")
_ONLY_DIGITS_OR_DASHES = re.compile(r"^[0-9-]+$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def slugify(text: Optional[str]) -> str:
    """
    Lower-case, drop unsafe characters, collapse whitespace/underscores/dashes to '-'.
    Unicode letters are kept (translated titles are not ASCII).
    """
    if not text:
        return ""
    slug = str(text).lower().strip()
    slug = _UNSAFE_CHARS.sub("", slug)
    slug = _SEPARATORS.sub("-", slug)
    slug = slug.strip("-")

    if not slug or _ONLY_DIGITS_OR_DASHES.match(slug):
        residue = "".join(ch for ch in str(text) if ch.isalnum())[:20].lower()
        return residue or "category"
    return slug


def ascii_slug(text: Optional[str]) -> str:
    """Default-language product slug when the source has no url_key."""
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")


def base36(number: int) -> str:
    if number == 0:
        return "0"
    sign = "-" if number < 0 else ""
    number = abs(number)
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return sign + "".join(reversed(digits))


def epoch_seconds(value: Any) -> int:
    """Naive source timestamps are UTC."""
    dt = to_datetime(value)
    if dt is None:
        raise ValueError(f"Unparseable created_at: {value!r}")
    if dt.tzinfo is not None:
        return int(dt.timestamp())
    return calendar.timegm(dt.timetuple())


def product_web_sku(sku: str, created_at: Any) -> str:
    return f"{sku}-{base36(epoch_seconds(created_at))}"


def product_identity(sku: str, entity_id: Any) -> str:
    return f"{sku}-{entity_id}"


def category_code(url_key: Optional[str], parent_id: Any, entity_id: Any) -> str:
    if url_key:
        return f"{url_key}_{parent_id}_{entity_id}"
    return f"category-{parent_id}-{entity_id}"


def entity_id_from_code(code: Optional[str]) -> Optional[int]:
    """Source entity id is the last '_' or '-' separated segment of a category code."""
    if not code:
        return None
    tail = re.split(r"[_-]", code)[-1]
    return int(tail) if tail.isdigit() else None


def compute_parent_slugs(categories: Iterable[Dict[str, Any]]) -> Dict[Any, Optional[str]]:
    """
    categories: dicts with id, parent_id and slug for one language.
    Returns id -> "ancestor/.../own" for categories with at least one ancestor, else None.
    Missing parents end the walk (treated as roots); cycles are cut at the first repeat.
    """
    by_id = {c["id"]: c for c in categories}

    def depth(cat_id) -> int:
        seen, d = set(), 0
        current = by_id.get(cat_id)
        while current and current.get("parent_id") in by_id and current["id"] not in seen:
            seen.add(current["id"])
            current = by_id[current["parent_id"]]
            d += 1
        return d

    out: Dict[Any, Optional[str]] = {}
    for cat_id in sorted(by_id, key=depth):
        cat = by_id[cat_id]
        chain: List[str] = []
        seen = {cat_id}
        parent = by_id.get(cat.get("parent_id"))
        while parent and parent["id"] not in seen:
            seen.add(parent["id"])
            if parent.get("slug"):
                chain.append(parent["slug"])
            parent = by_id.get(parent.get("parent_id"))
        if chain:
            out[cat_id] = "/".join(list(reversed(chain)) + [cat.get("slug") or ""])
        else:
            out[cat_id] = None
    return out
