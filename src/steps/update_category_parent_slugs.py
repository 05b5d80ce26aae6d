# =========================================
# 📄 File: src/steps/update_category_parent_slugs.py
# Purpose: Repair pass - recompute parent_slugs in every language and rewrite drifted values
# =========================================

import logging
from typing import Any, Dict

from src.pipeline.stage import Stage, stage_result
from src.steps.parent_slugs import write_parent_slugs

log = logging.getLogger(__name__)


class UpdateCategoryParentSlugsStep(Stage):
    name = "update_category_parent_slugs"
    description = "Recompute category parent slugs"

    def run(self) -> Dict[str, Any]:
        languages = self.target_db.query("SELECT id, code FROM languages ORDER BY code")
        if not languages:
            log.warning("No languages found; nothing to recompute")
            return stage_result(count=0)

        def fn(batch, idx):
            for language in batch:
                updated = write_parent_slugs(self.target_db, language["id"], only_missing=False)
                log.info(f"{language['code']}: {updated} parent slugs rewritten")
                totals[language["code"]] = updated
            return {"success": len(batch), "failed": 0}

        totals: Dict[str, int] = {}
        result = self.batch_processor().process(languages, fn)
        log.info(f"✅ Parent slugs recomputed for {result['success']} languages, {sum(totals.values())} rows rewritten")
        return stage_result(
            success=result["failed"] == 0, count=result["success"], failed=result["failed"], updated=sum(totals.values())
        )
