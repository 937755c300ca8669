"""Background summary generation for imported articles."""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import aiosqlite

from blog_archiver.services.nlp.textrank import summarize
from blog_archiver.services.text_utils import cooperative_yield
from blog_archiver.storage import database

logger = logging.getLogger(__name__)

# Articles summarized between yields to the event loop
YIELD_EVERY = 10

# Shorter texts are not worth summarizing
MIN_TEXT_LENGTH = 100


@dataclass
class SummaryReport:
    total: int = 0
    summarized: int = 0
    failed: List[str] = field(default_factory=list)


async def generate_summaries(
    db: aiosqlite.Connection,
    blog_id: Optional[str] = None,
    num_sentences: int = 3,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> SummaryReport:
    """Summarize every article that has text but no summary yet.

    Articles are processed one at a time and each summary is written as soon
    as it is computed, so no write lock is held across documents. A failure
    on one article is logged and the backlog continues.

    Args:
        db: Database connection
        blog_id: Restrict the backlog to one blog
        num_sentences: Sentences per summary
        on_progress: Called with (done, total) after each article
    """
    pending = await database.articles_needing_summary(db, blog_id, min_length=MIN_TEXT_LENGTH)
    report = SummaryReport(total=len(pending))
    if not pending:
        return report

    logger.info(f"Generating summaries for {len(pending)} articles")

    for done, (article_id, text) in enumerate(pending, start=1):
        try:
            summary = summarize(text, num_sentences)
            await database.update_summary(db, article_id, summary)
            report.summarized += 1
        except Exception as e:
            logger.warning(f"Could not summarize article {article_id}: {e}")
            report.failed.append(article_id)

        if on_progress is not None:
            on_progress(done, report.total)

        if done % YIELD_EVERY == 0:
            await cooperative_yield()

    logger.info(f"Summarized {report.summarized}/{report.total} articles ({len(report.failed)} failed)")
    return report
