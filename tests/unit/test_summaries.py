"""Unit tests for background summary generation."""

from unittest.mock import patch

import pytest

from blog_archiver.services.nlp.textrank import split_sentences
from blog_archiver.services.summaries import generate_summaries
from blog_archiver.storage.database import create_blog, insert_article, transaction


# Mark all tests as async
pytestmark = pytest.mark.anyio


LONG_TEXT = (
    "Static site generators turn plain text files into complete websites. "
    "Most generators read markdown files and apply templates to them. "
    "Templates control the layout of every generated page on the site. "
    "Some generators also build feeds and sitemaps from the same files. "
    "Deployment is usually a matter of copying the output directory."
)


async def add_article(db, blog_id, link, text):
    async with transaction(db):
        await insert_article(
            db,
            blog_id=blog_id,
            title=link,
            link=link,
            author=None,
            pubdate=None,
            content_html=None,
            content_text=text,
            word_count=len(text.split()),
            reading_time_minutes=1,
            is_full_text=True,
            imported_at="2024-01-01T00:00:00+00:00",
        )


async def summaries(db):
    cursor = await db.execute("SELECT link, summary FROM articles ORDER BY link")
    return {row["link"]: row["summary"] for row in await cursor.fetchall()}


@pytest.fixture
async def blog(db):
    return await create_blog(db, title="Blog", import_source="file")


async def test_summarizes_backlog(db, blog):
    """Test that only articles with enough text and no summary are processed."""
    await add_article(db, blog.id, "https://e.com/1", LONG_TEXT)
    await add_article(db, blog.id, "https://e.com/2", LONG_TEXT)
    await add_article(db, blog.id, "https://e.com/short", "Too short to bother with.")
    progress = []

    report = await generate_summaries(db, blog.id, num_sentences=2, on_progress=lambda *args: progress.append(args))

    assert report.total == 2
    assert report.summarized == 2
    assert report.failed == []
    assert progress == [(1, 2), (2, 2)]

    stored = await summaries(db)
    assert stored["https://e.com/short"] is None
    chosen = split_sentences(stored["https://e.com/1"])
    assert len(chosen) == 2
    assert all(sentence in LONG_TEXT for sentence in chosen)


async def test_second_run_has_nothing_to_do(db, blog):
    """Test that summarized articles are not processed again."""
    await add_article(db, blog.id, "https://e.com/1", LONG_TEXT)

    await generate_summaries(db, blog.id)
    report = await generate_summaries(db, blog.id)

    assert report.total == 0


async def test_failure_does_not_stop_backlog(db, blog):
    """Test that one failing article does not stop the rest."""
    for n in range(3):
        await add_article(db, blog.id, f"https://e.com/{n}", LONG_TEXT + f" Article number {n} ends here.")

    def flaky_summarize(text, num_sentences):
        if "number 1" in text:
            raise ValueError("cannot summarize")
        return "Summary."

    with patch("blog_archiver.services.summaries.summarize", side_effect=flaky_summarize):
        report = await generate_summaries(db, blog.id)

    assert report.summarized == 2
    assert len(report.failed) == 1

    stored = await summaries(db)
    assert stored["https://e.com/0"] == "Summary."
    assert stored["https://e.com/1"] is None
    assert stored["https://e.com/2"] == "Summary."


async def test_all_blogs_when_unscoped(db, blog):
    """Test processing every blog when no blog is given."""
    other = await create_blog(db, title="Other", import_source="file")
    await add_article(db, blog.id, "https://e.com/1", LONG_TEXT)
    await add_article(db, other.id, "https://o.com/1", LONG_TEXT)

    report = await generate_summaries(db)

    assert report.summarized == 2
