# tests/unit/test_config_loader.py
# ------------------------------------------------------------
# Purpose: YAML loading, ${VAR} substitution, defaults and
#          driver URL building.
# ------------------------------------------------------------

import pytest

from config import config_loader
from config.config_loader import (
    _apply_defaults,
    _substitute_env_placeholders,
    build_db_url,
    get_config,
    step_settings,
)


def test_substitute_env_placeholders(monkeypatch):
    monkeypatch.setenv("SOURCE_DATABASE_URL", "mysql://u:p@h/db")
    monkeypatch.delenv("NOT_THERE", raising=False)
    out = _substitute_env_placeholders("a: ${SOURCE_DATABASE_URL}\nb: ${NOT_THERE}")
    assert "a: mysql://u:p@h/db" in out
    assert "b: <MISSING:NOT_THERE>" in out


def test_apply_defaults_fills_steps_processing_and_filters():
    cfg = _apply_defaults({"steps": {"orders": {"batch_size": 7}}})
    assert cfg["steps"]["orders"] == {"enabled": True, "batch_size": 7, "parallel_limit": 2}
    assert cfg["steps"]["update_products"]["enabled"] is False
    assert cfg["processing"] == {"retry_attempts": 3, "retry_delay_ms": 1000, "timeout_ms": 300000}
    assert cfg["filters"]["excluded_category_ids"] == [1, 2, 3, 5, 6, 151]
    assert cfg["filters"]["excluded_product_skus"] == []


@pytest.mark.parametrize(
    "side, url, expected",
    [
        ("source", "mysql://u:p@h/db", "mysql+pymysql://u:p@h/db"),
        ("target", "postgres://u:p@h/db", "postgresql+psycopg2://u:p@h/db"),
        ("target", "u:p@h/db", "postgresql+psycopg2://u:p@h/db"),
        ("target", "postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ],
)
def test_build_db_url(side, url, expected):
    assert build_db_url({"databases": {side: {"url": url}}}, side) == expected


def test_step_settings_merges_defaults():
    assert step_settings({"steps": {"translation": {"languages": ["de"]}}}, "translation")["batch_size"] == 50
    assert step_settings({}, "unknown") == {}


def test_get_config_reads_dev_yaml(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    monkeypatch.setenv("SOURCE_DATABASE_URL", "mysql://u:p@localhost/magento")
    monkeypatch.setenv("TARGET_DATABASE_URL", "postgresql://u:p@localhost/shop")
    monkeypatch.setenv("LOG_LEVEL", "warning")
    cfg = get_config()
    assert cfg["environment"] == "dev"
    assert cfg["log_level"] == "WARNING"
    assert cfg["steps"]["translation"]["languages"] == ["de", "fr", "ja"]
    assert cfg["databases"]["source"]["url"] == "mysql://u:p@localhost/magento"


def test_missing_database_url_exits(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    monkeypatch.delenv("SOURCE_DATABASE_URL", raising=False)
    monkeypatch.setenv("TARGET_DATABASE_URL", "postgresql://u:p@localhost/shop")
    with pytest.raises(SystemExit):
        get_config()


def test_missing_config_file_exits(monkeypatch, tmp_path):
    monkeypatch.setattr(config_loader, "CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("ENV", "staging")
    with pytest.raises(SystemExit):
        get_config()
