# tests/unit/test_empty_inputs.py
# ------------------------------------------------------------
# Purpose: Every stage treats "nothing to do" as a clean run:
#          count 0, nothing failed, nothing written.
# ------------------------------------------------------------

import pytest

from src.pipeline.stage import MigrationContext
from src.steps.blog_posts import BlogPostsStep
from src.steps.categories import CategoriesStep
from src.steps.cert_coin_categories import CertCoinCategoriesStep
from src.steps.customers import CustomersStep
from src.steps.deduplicate_product_translations import DeduplicateProductTranslationsStep
from src.steps.merge_subcategories import MergeSubcategoriesStep
from src.steps.orders import OrdersStep
from src.steps.product_master_images_update import ProductMasterImagesUpdateStep
from src.steps.products import ProductsStep
from src.steps.translation import TranslationStep
from src.steps.update_category_parent_slugs import UpdateCategoryParentSlugsStep
from src.steps.update_image_paths import UpdateImagePathsStep
from src.steps.update_master_category_ids import UpdateMasterCategoryIdsStep
from src.steps.update_products import UpdateProductsStep
from src.transform.data_transformer import DataTransformer
from src.transform.eav_mapper import EavMapper
from src.transform.reference_resolver import ReferenceResolver

STAGES = [
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
]


@pytest.mark.parametrize("stage_cls", STAGES, ids=lambda cls: cls.name)
def test_stage_on_empty_databases_is_a_clean_no_op(stage_cls, cfg, fake_db, translator, tmp_path):
    cfg["steps"]["cert_coin_categories"]["csv_path"] = str(tmp_path / "cert_coin_categories.csv")
    source, target = fake_db(name="source"), fake_db(name="target")
    resolver = ReferenceResolver(target)
    context = MigrationContext(
        default_language_id="lang-en",
        default_language_code="en",
        eav_mapper=EavMapper(source),
        resolver=resolver,
        transformer=DataTransformer(resolver, media=cfg["media"]),
        translator=translator,
    )

    result = stage_cls(source, target, cfg, context).run()

    assert result["count"] == 0
    assert result["failed"] == 0
    assert result["success"] is True
    assert not target.executed
    assert not target.inserts
    assert not target.upserts
    assert translator.calls == []


def test_header_only_cert_csv_maps_nothing(cfg, fake_db, tmp_path):
    path = tmp_path / "cert_coin_categories.csv"
    path.write_text("cert-number,coin-number,main-category,sub-category-1,main-category-2,sub-category-2\n")
    cfg["steps"]["cert_coin_categories"]["csv_path"] = str(path)
    target = fake_db(name="target")

    result = CertCoinCategoriesStep(None, target, cfg, MigrationContext(default_language_id="lang-en")).run()

    assert result["count"] == 0
    assert target.queries == []
