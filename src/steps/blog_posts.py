# =========================================
# 📄 File: src/steps/blog_posts.py
# Purpose: Mageplaza blog posts -> contents + default-language content_translations
# Content ids are deterministic (uuid5 of post_id), so re-runs hit the same rows.
# =========================================

import logging
from typing import Any, Dict, List

from src.pipeline.stage import Stage, stage_result
from src.transform.records import SourceBlogPost

log = logging.getLogger(__name__)

BLOG_POSTS_SQL = """
    SELECT
        post_id, name, short_description, post_content, image, url_key,
        meta_title, meta_description, meta_keywords, publish_date,
        created_at, updated_at
    FROM mageplaza_blog_post
    WHERE enabled = 1
    ORDER BY created_at DESC
"""

CONTENT_UPDATE_COLS = ["sort", "image", "published", "is_allowed"]
TRANSLATION_UPDATE_COLS = ["title", "slug", "description", "meta_title", "meta_description", "meta_keywords"]


class BlogPostsStep(Stage):
    name = "blog_posts"
    description = "Blog posts to contents"

    def run(self) -> Dict[str, Any]:
        log.info("Starting blog posts migration step...")
        language_id = self.require_default_language()

        posts = [SourceBlogPost.from_row(r) for r in self.source_db.query(BLOG_POSTS_SQL)]
        if not posts:
            log.warning("No blog posts found to migrate")
            return stage_result(count=0)
        log.info(f"Fetched {len(posts)} enabled blog posts from source")

        result = self.batch_processor().process(posts, lambda batch, idx: self.process_batch(batch, language_id))
        log.info(f"✅ Blog posts migration completed: {result['success']} success, {result['failed']} failed")
        return stage_result(success=result["failed"] == 0, count=result["success"], failed=result["failed"])

    def process_batch(self, batch: List[SourceBlogPost], language_id: Any) -> Dict[str, int]:
        transformer = self.context.transformer
        contents, translations = [], []
        for post in batch:
            if post.post_id is None:
                continue
            content, translation = transformer.transform_blog_post(post, language_id)
            contents.append(content)
            translations.append(translation)

        self.target_db.upsert("contents", contents, conflict_cols=["id"], update_cols=CONTENT_UPDATE_COLS)
        self.target_db.upsert(
            "content_translations",
            translations,
            conflict_cols=["content_id", "language_id"],
            update_cols=TRANSLATION_UPDATE_COLS,
        )
        return {"success": len(contents), "failed": len(batch) - len(contents)}
