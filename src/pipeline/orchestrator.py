# =========================================
# 📄 File: src/pipeline/orchestrator.py
# Purpose: Open both databases, run the enabled stages in their fixed order,
#          thread the shared context between them, print a summary, tear down
# =========================================

import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from config.config_loader import build_db_url, step_settings
from src.clients.database import Database
from src.pipeline.errors import StageError
from src.pipeline.stage import MigrationContext
from src.steps.blog_posts import BlogPostsStep
from src.steps.categories import CategoriesStep
from src.steps.cert_coin_categories import CertCoinCategoriesStep
from src.steps.customers import CustomersStep
from src.steps.deduplicate_product_translations import DeduplicateProductTranslationsStep
from src.steps.merge_subcategories import MergeSubcategoriesStep
from src.steps.orders import OrdersStep
from src.steps.prepare import PrepareStep
from src.steps.product_master_images_update import ProductMasterImagesUpdateStep
from src.steps.products import ProductsStep
from src.steps.translation import TranslationStep
from src.steps.update_category_parent_slugs import UpdateCategoryParentSlugsStep
from src.steps.update_image_paths import UpdateImagePathsStep
from src.steps.update_master_category_ids import UpdateMasterCategoryIdsStep
from src.steps.update_products import UpdateProductsStep
from src.transform.data_transformer import DataTransformer
from src.transform.reference_resolver import ReferenceResolver

log = logging.getLogger(__name__)

# Declared order is the only global ordering contract between stages
STEP_REGISTRY = OrderedDict(
    (cls.name, cls)
    for cls in (
        PrepareStep,
        BlogPostsStep,
        CategoriesStep,
        ProductsStep,
        UpdateImagePathsStep,
        ProductMasterImagesUpdateStep,
        MergeSubcategoriesStep,
        CertCoinCategoriesStep,
        UpdateMasterCategoryIdsStep,
        CustomersStep,
        OrdersStep,
        TranslationStep,
        DeduplicateProductTranslationsStep,
        UpdateProductsStep,
        UpdateCategoryParentSlugsStep,
    )
)


def format_execution_time(seconds: float) -> str:
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}h {minutes:02d}m {secs:02d}s"


def print_summary(results: "OrderedDict[str, Dict[str, Any]]", elapsed: float) -> str:
    """Log (and return) the end-of-run table: one line per stage plus totals."""
    lines = ["", "=" * 60, "MIGRATION SUMMARY", "=" * 60]
    total_records = 0
    for name, result in results.items():
        marker = "✅" if result.get("success") else "❌"
        count = result.get("count", 0) or 0
        total_records += count
        lines.append(f"{marker} {name:<30} count={count:<8} failed={result.get('failed', 0)}")
    lines.append("-" * 60)
    lines.append(f"Total records processed: {total_records}")
    lines.append(f"Total execution time: {format_execution_time(elapsed)}")
    lines.append("=" * 60)
    report = "\n".join(lines)
    log.info(report)
    return report


class Orchestrator:
    """
    Stages are strictly sequential. A stage's top-level exception is fatal: it is logged,
    both engines are disposed and the exception propagates to the caller.
    """

    def __init__(self, cfg: Dict[str, Any], source_db=None, target_db=None, echo: bool = False):
        self.cfg = cfg
        self.source_db = source_db or Database(build_db_url(cfg, "source"), name="source", echo=echo)
        self.target_db = target_db or Database(build_db_url(cfg, "target"), name="target", echo=echo)
        resolver = ReferenceResolver(self.target_db)
        self.context = MigrationContext(
            resolver=resolver,
            transformer=DataTransformer(resolver, media=cfg.get("media")),
        )
        self.results: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def enabled_steps(self, names: Optional[List[str]] = None) -> List[str]:
        if names:
            unknown = [n for n in names if n not in STEP_REGISTRY]
            if unknown:
                raise StageError(unknown[0], f"unknown step (available: {', '.join(STEP_REGISTRY)})")
            # prepare fills the context every other stage reads
            wanted = set(names) | {"prepare"}
            return [n for n in STEP_REGISTRY if n in wanted]
        return [n for n in STEP_REGISTRY if step_settings(self.cfg, n).get("enabled", True)]

    def run_stage(self, name: str) -> Dict[str, Any]:
        stage = STEP_REGISTRY[name](self.source_db, self.target_db, self.cfg, self.context)
        log.info(f"▶ Running step '{name}': {stage.description}")
        started = time.monotonic()
        result = stage.run()
        if not isinstance(result, dict):
            raise StageError(name, f"run() returned {type(result).__name__}, expected a result dict")
        self.context.update(result.pop("context", None))
        log.info(
            f"Step '{name}' finished in {format_execution_time(time.monotonic() - started)} "
            f"(count={result.get('count', 0)}, failed={result.get('failed', 0)})"
        )
        self.results[name] = result
        return result

    def run(self, steps: Optional[List[str]] = None) -> "OrderedDict[str, Dict[str, Any]]":
        started = time.monotonic()
        names = self.enabled_steps(steps)
        skipped = [n for n in STEP_REGISTRY if n not in names]
        if skipped:
            log.info(f"Skipping disabled steps: {', '.join(skipped)}")
        try:
            for name in names:
                try:
                    self.run_stage(name)
                except Exception:
                    log.exception(f"❌ Step '{name}' failed; aborting migration")
                    raise
            print_summary(self.results, time.monotonic() - started)
            return self.results
        finally:
            self.close()

    def run_step(self, name: str) -> Dict[str, Any]:
        """prepare, then exactly one named stage."""
        results = self.run([name])
        return results[name]

    def check_connections(self) -> Dict[str, bool]:
        status = {}
        try:
            for db in (self.source_db, self.target_db):
                try:
                    status[db.name] = bool(db.ping())
                except Exception as e:
                    log.error(f"❌ {db.name} connection failed: {e}")
                    status[db.name] = False
                else:
                    log.info(f"✅ {db.name} connection OK")
        finally:
            self.close()
        return status

    def close(self) -> None:
        for db in (self.source_db, self.target_db):
            try:
                db.dispose()
            except Exception as e:
                log.warning(f"Failed to dispose {getattr(db, 'name', 'database')}: {e}")
        log.info("Database connections closed")
