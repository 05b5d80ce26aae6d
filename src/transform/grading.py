# =========================================
# 📄 File: src/transform/grading.py
# Purpose: Pure helpers for coin grading, year extraction and product status
# (no DB, no I/O - unit tested directly)
# =========================================

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

# 70-point grade -> 10-point scale used by the storefront
NGC_TO_10_POINT: Dict[int, float] = {
    70: 10, 69: 9.9, 68: 9.8, 67: 9.7, 66: 9.6, 65: 9.5, 64: 9.4, 63: 9.3,
    62: 9.2, 61: 9.1, 60: 9, 58: 8.8, 55: 8.5, 53: 8.3, 50: 8, 45: 7.5,
    40: 7, 35: 6.5, 30: 6, 25: 5.5, 20: 5, 15: 4.5, 12: 4, 10: 3.5,
    8: 3, 6: 2.5, 4: 2, 3: 1.5, 2: 1.5, 1: 1,
}

# Service followed by PrefixValueSuffix, e.g. "PCGS XF45BN"
GRADE_PATTERNS = [
    re.compile(r"(PCGS)\s+([A-Z]+)(\d+)([A-Z]+)?"),
    re.compile(r"(NGC)\s+([A-Z]+)(\d+)([A-Z]+)?"),
    re.compile(r"(ANACS)\s+([A-Z]+)(\d+)([A-Z]+)?"),
]

INVALID_YEAR_VALUES = {"none", "None", "NONE", "", "null", "NULL", "0", "(199"}
MIN_YEAR, MAX_YEAR = 1000, 2100

ARCHIVE_DELAY = timedelta(days=21)


def to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def convert_to_10_point_scale(grade: Any) -> Optional[float]:
    """Exact table hit, otherwise the nearest key (ties go to the smaller key)."""
    value = to_float(grade)
    if not value:
        return None
    if value in NGC_TO_10_POINT:
        return NGC_TO_10_POINT[value]
    closest = min(sorted(NGC_TO_10_POINT), key=lambda k: abs(k - value))
    return NGC_TO_10_POINT[closest]


def parse_grade_from_meta_title(meta_title: Any) -> Optional[Dict[str, Any]]:
    if not meta_title or not isinstance(meta_title, str):
        return None
    for pattern in GRADE_PATTERNS:
        match = pattern.search(meta_title)
        if match:
            return {
                "service": match.group(1),
                "prefix": match.group(2) or None,
                "value": int(match.group(3)) if match.group(3) else None,
                "suffix": match.group(4) or None,
            }
    return None


def build_grade_text(prefix: Optional[str], value: Any, suffix: Optional[str]) -> Optional[str]:
    text = ""
    if prefix:
        text += prefix
    number = to_float(value)
    if number:
        text += str(int(number))
    if suffix:
        text += suffix
    return text.strip() or None


def extract_year(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if s in INVALID_YEAR_VALUES or len(s) < 4:
        return None

    for pattern in (r"^(\d{4})", r"\b(\d{4})\b"):
        match = re.search(pattern, s)
        if match and MIN_YEAR <= int(match.group(1)) <= MAX_YEAR:
            return match.group(1)
    return None


def parse_valid_year(year: Any, sort_string: Any, name: Any) -> Optional[str]:
    """year attribute -> sort string -> product name; first valid 4-digit year wins."""
    for candidate in (year, sort_string, name):
        found = extract_year(candidate)
        if found:
            return found
    return None


def parse_valid_year_date(year: Any, sort_string: Any, name: Any) -> Optional[date]:
    found = parse_valid_year(year, sort_string, name)
    return date(int(found), 1, 1) if found else None


def is_flag_set(value: Any) -> bool:
    """Source stores enum flags as ints or strings interchangeably."""
    return value is not None and str(value).strip() == "1"


def determine_product_status(archived_status: Any, eav_sold_date: Any, sold_date: Any) -> str:
    if is_flag_set(archived_status):
        return "archived"
    if eav_sold_date or sold_date:
        return "sold"
    return "pending"


def calculate_archived_at(archived_status: Any, eav_sold_date: Any, sold_date: Any) -> Optional[datetime]:
    sold = to_datetime(eav_sold_date or sold_date)
    if is_flag_set(archived_status) and sold:
        return sold + ARCHIVE_DELAY
    return None


def to_datetime(value: Any) -> Optional[datetime]:
    """Accept datetime/date objects or MySQL-style 'YYYY-MM-DD HH:MM:SS' strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    s = str(value).strip().replace("T", " ").rstrip("Z")
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None
