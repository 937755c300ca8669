"""Shared persistence path for every importer.

Importers differ only in how they discover posts. Once they have a blog's
metadata and a list of DiscoveredPost records they all go through the same
steps: create the blog and its import record, write posts in batched
transactions, recompute the blog's counters and close the import record.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from blog_archiver.config import ServerConfig
from blog_archiver.errors import PersistenceError
from blog_archiver.models.schemas import (
    Blog,
    DiscoveredPost,
    ImportProgress,
    ImportResult,
    JobStatus,
    SourceKind,
)
from blog_archiver.services.text_utils import (
    cooperative_yield,
    count_words,
    is_full_text,
    reading_time_minutes,
    strip_html,
    utc_now,
)
from blog_archiver.storage import database

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ImportProgress], None]


def dedupe_posts(posts: Iterable[DiscoveredPost]) -> List[DiscoveredPost]:
    """Drop posts without a link and keep the first post seen for each link."""
    unique: Dict[str, DiscoveredPost] = {}
    for post in posts:
        if post.link and post.link not in unique:
            unique[post.link] = post
    return list(unique.values())


def article_fields(post: DiscoveredPost) -> Dict[str, Any]:
    """Derive the stored text fields for a post.

    Text supplied by the source wins over text stripped from the HTML, and a
    server-side full-text flag wins over the length heuristic.
    """
    if post.content_text is not None:
        text = post.content_text
    else:
        text = strip_html(post.content or "")

    words = count_words(text)
    return {
        "title": post.title,
        "link": post.link,
        "author": post.author,
        "pubdate": post.published,
        "content_html": post.content,
        "content_text": text or None,
        "word_count": words,
        "reading_time_minutes": reading_time_minutes(words),
        "is_full_text": post.is_full_text if post.is_full_text is not None else is_full_text(text),
        "summary": post.summary,
        # Tag order is kept for display; duplicates would violate UNIQUE(article_id, tag)
        "tags": list(dict.fromkeys(post.categories)),
    }


class BaseImporter(ABC):
    """An import strategy for one kind of source."""

    source: SourceKind

    def __init__(
        self,
        db: aiosqlite.Connection,
        config: ServerConfig,
        progress: Optional[ProgressSink] = None,
    ):
        self.db = db
        self.config = config
        self._progress = progress

    @abstractmethod
    async def run(self, params: Dict[str, Any]) -> ImportResult:
        """Import one blog and resolve with where it landed."""

    def emit(
        self,
        phase: str,
        total_items: int,
        imported_items: int,
        message: str,
        discovered_title: Optional[str] = None,
    ) -> None:
        if self._progress is None:
            return
        self._progress(
            ImportProgress(
                phase=phase,
                total_items=total_items,
                imported_items=imported_items,
                message=message,
                discovered_title=discovered_title,
            )
        )

    async def open_blog(
        self,
        title: str,
        description: Optional[str] = None,
        feed_url: Optional[str] = None,
        site_url: Optional[str] = None,
    ) -> Tuple[Blog, str]:
        """Create the blog row and its running import record.

        Raises:
            PersistenceError: If either row cannot be written
        """
        try:
            blog = await database.create_blog(
                self.db,
                title=title,
                import_source=self.source.value,
                description=description,
                feed_url=feed_url,
                site_url=site_url,
            )
            record_id = await database.create_import_record(self.db, blog.id, self.source.value)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not create blog '{title}': {e}") from e

        logger.info(f"Created blog {blog.id} ({title}) from {self.source.value}")
        return blog, record_id

    async def persist_batch(self, blog_id: str, posts: List[DiscoveredPost]) -> int:
        """Write posts in one transaction and return how many new rows landed.

        A failing batch is rolled back as a unit, logged, and counts as zero.
        """
        imported_at = utc_now()
        inserted = 0
        try:
            async with database.transaction(self.db):
                for post in posts:
                    if await database.insert_article(
                        self.db,
                        blog_id=blog_id,
                        imported_at=imported_at,
                        **article_fields(post),
                    ):
                        inserted += 1
        except Exception as e:
            logger.warning(f"Batch of {len(posts)} posts for blog {blog_id} rolled back: {e!r}")
            return 0
        return inserted

    async def persist_posts(
        self,
        blog_id: str,
        posts: List[DiscoveredPost],
        already_imported: int = 0,
    ) -> int:
        """Persist posts in discovery order, batch_size per transaction."""
        posts = dedupe_posts(posts)
        total = already_imported + len(posts)
        imported = already_imported
        size = self.config.batch_size

        for start in range(0, len(posts), size):
            batch = posts[start:start + size]
            imported += await self.persist_batch(blog_id, batch)
            self.emit(
                "persisting",
                total,
                imported,
                f"Imported {imported}/{total} posts",
            )
            await cooperative_yield()

        return imported

    async def finalize(
        self,
        blog_id: str,
        record_id: str,
        total_items: int,
        imported_items: int,
    ) -> ImportResult:
        """Recompute the blog's counters and close the import record."""
        self.emit("finalizing", total_items, imported_items, "Updating blog statistics")

        blog = await database.recompute_blog_stats(self.db, blog_id)
        await database.finish_import_record(
            self.db,
            record_id,
            JobStatus.COMPLETED.value,
            total_items,
            imported_items,
        )

        post_count = blog.post_count if blog else 0
        logger.info(
            f"Import into blog {blog_id} finished: {imported_items}/{total_items} imported, "
            f"{post_count} stored"
        )
        self.emit(
            "finalizing",
            total_items,
            imported_items,
            f"Import complete! {imported_items} posts imported.",
        )
        return ImportResult(blog_id=blog_id, total_items=total_items, imported_items=imported_items)

    async def abandon(self, record_id: str, total_items: int, imported_items: int, error: Exception) -> None:
        """Mark the import record failed. Never raises."""
        try:
            await database.finish_import_record(
                self.db,
                record_id,
                JobStatus.FAILED.value,
                total_items,
                imported_items,
                error=str(error),
            )
        except aiosqlite.Error as e:
            logger.error(f"Could not mark import record {record_id} failed: {e}")

    async def store(
        self,
        posts: List[DiscoveredPost],
        title: str,
        description: Optional[str] = None,
        feed_url: Optional[str] = None,
        site_url: Optional[str] = None,
    ) -> ImportResult:
        """Open a blog, persist a complete post list and finalize."""
        posts = dedupe_posts(posts)
        blog, record_id = await self.open_blog(title, description, feed_url, site_url)

        imported = 0
        try:
            imported = await self.persist_posts(blog.id, posts)
            return await self.finalize(blog.id, record_id, len(posts), imported)
        except Exception as e:
            await self.abandon(record_id, len(posts), imported, e)
            raise
