# =========================================
# 📄 File: config/config_loader.py
# Purpose: Load migration YAML config (dev/prod), substitute ${ENV_VARS}, validate, and expose helpers
# =========================================

import os                      # Used to read ENV to pick dev/prod and to resolve ${VAR} placeholders
import re                      # Used to find and replace ${VAR} patterns inside YAML text
import sys                     # Used to exit early with a clear error message on invalid config
from typing import Dict, Any   # Type hints for better readability and tooling
import yaml                    # Safe YAML parsing (install: PyYAML)

CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))   # config/ folder, independent of the cwd

# Step defaults, used when a YAML file omits a step or one of its knobs
DEFAULT_STEPS: Dict[str, Dict[str, Any]] = {
    "prepare": {"enabled": True},
    "categories": {"enabled": True, "batch_size": 50, "parallel_limit": 1},
    "blog_posts": {"enabled": True, "batch_size": 50, "parallel_limit": 1},
    "products": {"enabled": True, "batch_size": 100, "parallel_limit": 2},
    "update_image_paths": {"enabled": True, "batch_size": 500, "parallel_limit": 1},
    "product_master_images_update": {"enabled": True, "batch_size": 500, "parallel_limit": 1},
    "merge_subcategories": {"enabled": True, "batch_size": 100, "parallel_limit": 1},
    "cert_coin_categories": {"enabled": True, "batch_size": 50, "parallel_limit": 1, "csv_path": None},
    "update_master_category_ids": {"enabled": True, "batch_size": 1000, "parallel_limit": 1},
    "customers": {"enabled": True, "batch_size": 500, "parallel_limit": 1},
    "orders": {"enabled": True, "batch_size": 50, "parallel_limit": 2},
    "translation": {"enabled": True, "batch_size": 50, "parallel_limit": 2, "languages": []},
    "deduplicate_product_translations": {"enabled": False, "batch_size": 100, "parallel_limit": 1},
    "update_products": {"enabled": False, "batch_size": 100, "parallel_limit": 1},
    "update_category_parent_slugs": {"enabled": False, "batch_size": 200, "parallel_limit": 1},
}

DEFAULT_PROCESSING = {"retry_attempts": 3, "retry_delay_ms": 1000, "timeout_ms": 300000}

# Scheme prefixes rewritten to the SQLAlchemy driver we ship with
_DRIVER_SCHEMES = {
    "mysql": "mysql+pymysql",
    "postgres": "postgresql+psycopg2",
    "postgresql": "postgresql+psycopg2",
}


def _substitute_env_placeholders(yaml_text: str) -> str:
    """
    Replace ${VAR} placeholders in YAML text with their environment variable values.
    If an env var is missing, mark it as <MISSING:VAR> to fail validation cleanly.
    """
    pattern = re.compile(r"\$\{([^}^{]+)\}")
    def repl(match):
        var_name = match.group(1)                              # Extract VAR name from ${VAR}
        return os.getenv(var_name, f"<MISSING:{var_name}>")    # Return env value or a sentinel
    return pattern.sub(repl, yaml_text)

def _load_yaml_file(path: str) -> Dict[str, Any]:
    """
    Read a YAML file from disk, perform ${VAR} substitution, and parse it to a dict.
    """
    if not os.path.exists(path):
        print(f"❌ Configuration file not found: {path}")
        sys.exit(1)

    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    substituted = _substitute_env_placeholders(raw)

    try:
        cfg = yaml.safe_load(substituted)
    except yaml.YAMLError as e:
        print(f"❌ YAML parsing error in {path}: {e}")
        sys.exit(1)

    return cfg or {}

def _apply_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill step/processing knobs the YAML left out so every stage can read its settings directly.
    """
    steps = cfg.setdefault("steps", {}) or {}
    for name, defaults in DEFAULT_STEPS.items():
        merged = dict(defaults)
        merged.update(steps.get(name) or {})
        steps[name] = merged
    cfg["steps"] = steps

    processing = dict(DEFAULT_PROCESSING)
    processing.update(cfg.get("processing") or {})
    cfg["processing"] = processing

    filters = cfg.setdefault("filters", {}) or {}
    filters.setdefault("excluded_category_ids", [1, 2, 3, 5, 6, 151])
    filters.setdefault("product_types", ["simple"])
    filters.setdefault("order_statuses", ["complete", "a_complete"])
    filters["excluded_product_skus"] = filters.get("excluded_product_skus") or []
    cfg["filters"] = filters

    cfg.setdefault("eav_attributes", {})
    cfg.setdefault("product_attributes", {})
    cfg.setdefault("media", {})
    cfg.setdefault("exports", {})
    return cfg

def _validate_config(cfg: Dict[str, Any]) -> None:
    """
    Validate presence of required keys and ensure no <MISSING:...> placeholders remain in DB URLs.
    """
    required_top = ["environment", "log_level", "databases", "steps", "processing", "filters"]
    missing_top = [k for k in required_top if k not in cfg or cfg[k] in (None, "")]
    if missing_top:
        print(f"❌ Missing top-level config keys: {', '.join(missing_top)}")
        sys.exit(1)

    dbs = cfg.get("databases", {})
    missing_db = [f"databases.{side}.url" for side in ("source", "target")
                  if not (dbs.get(side) or {}).get("url") or "MISSING:" in str(dbs[side]["url"])]
    if missing_db:
        print(f"❌ Missing/invalid DB config keys: {', '.join(missing_db)}")  # Usually SOURCE/TARGET_DATABASE_URL unset
        sys.exit(1)

    bad_media = [f"media.{k}" for k, v in cfg.get("media", {}).items() if "MISSING:" in str(v)]
    if bad_media:
        print(f"❌ Unresolved media settings: {', '.join(bad_media)} (set MEDIA_BASE_URL)")
        sys.exit(1)

    if not cfg["filters"].get("product_types"):
        print("❌ filters.product_types must list at least one product type.")
        sys.exit(1)

def get_config() -> Dict[str, Any]:
    """
    Public API: pick env from ENV (default 'dev'), load YAML, validate, return dict.
    """
    env = os.getenv("ENV", "dev").lower()
    path = os.path.join(CONFIG_DIR, f"{env}.yaml")
    cfg = _apply_defaults(_load_yaml_file(path))
    if os.getenv("LOG_LEVEL"):
        cfg["log_level"] = os.getenv("LOG_LEVEL").upper()
    _validate_config(cfg)
    return cfg

def build_db_url(cfg: Dict[str, Any], side: str) -> str:
    """
    Helper to turn the configured source/target URL into a SQLAlchemy driver URL.
    A URL without scheme gets one from databases.<side>.type (mysql/postgresql).
    """
    db = cfg["databases"][side]
    url = str(db["url"]).strip()
    default_type = "mysql" if side == "source" else "postgresql"
    db_type = (db.get("type") or default_type).lower()

    if "://" not in url:                                      # Bare host/db string, e.g. "user:pw@host/db"
        url = f"{db_type}://{url}"

    scheme, rest = url.split("://", 1)
    scheme = _DRIVER_SCHEMES.get(scheme.lower(), scheme)      # Leave explicit driver URLs alone
    return f"{scheme}://{rest}"

def step_settings(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return merged settings for a single step (always a dict)."""
    return dict(DEFAULT_STEPS.get(name, {}), **(cfg.get("steps", {}).get(name) or {}))
