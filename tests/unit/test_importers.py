"""Unit tests for the source importers.

Network access goes through the patched HTTP client from conftest; the
database is the in-memory fixture.
"""

import asyncio
import json
from unittest.mock import call

import pytest

from blog_archiver.config import ServerConfig
from blog_archiver.errors import (
    EmptyFeedError,
    InvalidFeedError,
    SourceUnreachableError,
    UnrecognizedFormatError,
)
from blog_archiver.models.schemas import DiscoveredPost
from blog_archiver.services.importers import FileImporter, HistoryApiImporter, WaybackImporter, list_feeds
from blog_archiver.services.importers.base import article_fields, dedupe_posts
from blog_archiver.services.importers.file_importer import parse_import_document
from blog_archiver.services.importers.wayback_importer import normalize_feed_url
from blog_archiver.services.wayback import CDX_API_BASE, snapshot_url
from blog_archiver.storage.database import get_blog, get_import_records
from tests.conftest import make_response, rss


# Mark all tests as async
pytestmark = pytest.mark.anyio


HISTORY_BASE = "https://history.example.com"


async def count(db, table):
    cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
    return (await cursor.fetchone())[0]


async def titles(db):
    cursor = await db.execute("SELECT title FROM articles ORDER BY title")
    return [row["title"] for row in await cursor.fetchall()]


def history_item(n, **extra):
    item = {
        "title": f"History {n}",
        "link": f"https://h.example.com/{n}",
        "pubdate": f"2020-01-0{n}T00:00:00Z",
        "description": f"<p>Body {n}</p>",
        "categories": ["history"],
    }
    item.update(extra)
    return item


class TestPostHelpers:
    """Tests for post de-duplication and derived article fields."""

    def test_dedupe_keeps_first_and_drops_linkless(self):
        """Test that the first post per link wins and linkless posts are dropped."""
        posts = [
            DiscoveredPost(title="First", link="https://e.com/1"),
            DiscoveredPost(title="No link", link=""),
            DiscoveredPost(title="Second copy", link="https://e.com/1"),
        ]

        assert [p.title for p in dedupe_posts(posts)] == ["First"]

    def test_article_fields_from_html(self):
        """Test word count, reading time and tags derived from HTML content."""
        post = DiscoveredPost(
            title="T",
            link="https://e.com/1",
            content="<p>" + "word " * 300 + "</p>",
            categories=["a", "b", "a"],
        )

        fields = article_fields(post)

        assert fields["word_count"] == 300
        assert fields["reading_time_minutes"] == 2
        assert fields["is_full_text"] is True
        assert fields["tags"] == ["a", "b"]

    def test_source_flags_win(self):
        """Test that source-supplied text and full-text flag win over derived values."""
        post = DiscoveredPost(
            title="T",
            link="https://e.com/1",
            content="<p>short</p>",
            content_text="short text from source",
            is_full_text=True,
        )

        fields = article_fields(post)

        assert fields["content_text"] == "short text from source"
        assert fields["is_full_text"] is True


class TestWaybackImporter:
    """Live feed, pagination and snapshot merging."""

    async def test_simple_feed_without_snapshots(self, db, config, http):
        """Test importing a single-page feed that was never archived."""
        feed_url = "https://example.com/index.xml"
        http.add(feed_url, make_response(text=rss("Simple Blog", [
            ("One", "https://example.com/1"),
            ("Two", "https://example.com/2"),
            ("Three", "https://example.com/3"),
        ])))

        result = await WaybackImporter(db, config).run({"feed_url": feed_url})

        assert result.total_items == 3
        assert result.imported_items == 3
        blog = await get_blog(db, result.blog_id)
        assert blog.post_count == 3
        assert blog.title == "Simple Blog"
        assert blog.feed_url == feed_url
        assert blog.import_source == "wayback"

    async def test_pagination_and_snapshots(self, db, config, http):
        """Test merging paginated live pages with archived snapshots."""
        feed_url = "https://blog.example.com/feed/"
        http.add(feed_url, make_response(text=rss("WP Blog", [
            ("A", "https://blog.example.com/a"),
            ("B", "https://blog.example.com/b"),
        ])))
        http.add(f"{feed_url}?paged=2", make_response(text=rss("WP Blog", [
            ("C", "https://blog.example.com/c"),
            ("A", "https://blog.example.com/a"),
        ])))
        http.add(f"{feed_url}?paged=3", make_response(text=rss("WP Blog", [
            ("A", "https://blog.example.com/a"),
        ])))
        # Page 4 is unrouted and answers 404
        http.add(CDX_API_BASE, make_response(json_data=[["timestamp"], ["20150101000000"]]))
        http.add(snapshot_url(feed_url, "20150101000000"), make_response(text=rss("WP Blog", [
            ("Old", "https://blog.example.com/old"),
            ("B as archived", "https://blog.example.com/b"),
        ])))
        events = []

        result = await WaybackImporter(db, config, events.append).run({"feed_url": feed_url})

        assert result.imported_items == 4
        assert await titles(db) == ["A", "B", "C", "Old"]

        requested = http.urls()
        assert f"{feed_url}?paged=4" in requested
        assert f"{feed_url}?paged=5" not in requested

        phases = [event.phase for event in events]
        assert "fetching page 2" in phases
        assert "snapshots" in phases
        assert phases[-1] == "finalizing"
        assert events[0].phase == "discovering"
        assert any(event.discovered_title == "WP Blog" for event in events)

    async def test_rate_limited_snapshot_index_is_retried(self, db, http, tmp_path):
        """Test backoff when the snapshot index is rate limited."""
        config = ServerConfig(
            db_path=tmp_path / "test.db",
            feed_page_delay=0,
            snapshot_delay=0,
            backoff_base=1.1,
            max_retries=3,
        )
        feed_url = "https://example.com/index.xml"
        http.add(feed_url, make_response(text=rss("Blog", [
            ("New", "https://example.com/new"),
        ])))
        http.add(
            CDX_API_BASE,
            make_response(429),
            make_response(429),
            make_response(429),
            make_response(json_data=[["timestamp"], ["20180101000000"]]),
        )
        http.add(snapshot_url(feed_url, "20180101000000"), make_response(text=rss("Blog", [
            ("Archived", "https://example.com/archived"),
        ])))

        result = await WaybackImporter(db, config).run({"feed_url": feed_url})

        assert result.imported_items == 2
        assert http.sleep.await_args_list == [
            call(pytest.approx(2.2)),
            call(pytest.approx(4.4)),
            call(pytest.approx(8.8)),
        ]

    async def test_failed_snapshot_is_skipped(self, db, config, http):
        """Test that an unusable snapshot is skipped and the import continues."""
        feed_url = "https://example.com/index.xml"
        http.add(feed_url, make_response(text=rss("Blog", [("Live", "https://example.com/live")])))
        http.add(CDX_API_BASE, make_response(json_data=[["timestamp"], ["20100101000000"], ["20110101000000"]]))
        http.add(snapshot_url(feed_url, "20100101000000"), make_response(text="<html>Gone</html>"))
        http.add(snapshot_url(feed_url, "20110101000000"), make_response(text=rss("Blog", [
            ("Archived", "https://example.com/archived"),
        ])))

        result = await WaybackImporter(db, config).run({"feed_url": feed_url})

        assert result.imported_items == 2

    async def test_html_response_is_invalid_feed(self, db, config, http):
        """Test that an HTML page at the feed URL fails before any blog is created."""
        feed_url = "https://example.com/feed.xml"
        http.add(feed_url, make_response(text="<!DOCTYPE html><html><body>Blog home</body></html>"))

        with pytest.raises(InvalidFeedError, match="not a valid feed"):
            await WaybackImporter(db, config).run({"feed_url": feed_url})

        assert await count(db, "blogs") == 0

    async def test_unreachable_feed(self, db, config, http):
        """Test that a feed returning an HTTP error is unreachable."""
        http.add("https://example.com/feed.xml", make_response(500))

        with pytest.raises(SourceUnreachableError):
            await WaybackImporter(db, config).run({"feed_url": "https://example.com/feed.xml"})

    async def test_empty_feed(self, db, config, http):
        """Test that a feed without items fails."""
        http.add("https://example.com/feed.xml", make_response(text=rss("Empty", [])))

        with pytest.raises(EmptyFeedError):
            await WaybackImporter(db, config).run({"feed_url": "https://example.com/feed.xml"})

        assert await count(db, "blogs") == 0

    async def test_scheme_added(self, db, config, http):
        """Test that a feed URL without a scheme is fetched over https."""
        http.add("https://example.com/index.xml", make_response(text=rss("Blog", [("P", "https://example.com/p")])))

        await WaybackImporter(db, config).run({"feed_url": "example.com/index.xml"})

        assert http.urls()[0] == "https://example.com/index.xml"

    def test_normalize_feed_url(self):
        """Test feed URL normalization."""
        assert normalize_feed_url("  example.com/feed ") == "https://example.com/feed"
        assert normalize_feed_url("http://example.com/feed") == "http://example.com/feed"

    async def test_import_record_completed(self, db, config, http):
        """Test that the persisted import record is completed with counts."""
        feed_url = "https://example.com/index.xml"
        http.add(feed_url, make_response(text=rss("Blog", [("P", "https://example.com/p")])))

        result = await WaybackImporter(db, config).run({"feed_url": feed_url})

        records = await get_import_records(db, result.blog_id)
        assert records[0]["state"] == "completed"
        assert records[0]["source"] == "wayback"
        assert records[0]["imported_items"] == 1


class TestBatchPersistence:
    """Batched transactions shared by every importer."""

    async def test_bad_tag_does_not_lose_batch(self, db, config):
        """Test that one unstorable tag leaves the rest of the batch intact."""
        importer = FileImporter(db, config)
        blog, _ = await importer.open_blog("Batch Blog")
        posts = [
            DiscoveredPost(
                title=f"Post {i}",
                link=f"https://e.com/{i}",
                categories=[f"tag-{i}", "common"],
            )
            for i in range(50)
        ]
        posts[10].categories = ["tag-10", None, "common"]

        inserted = await importer.persist_batch(blog.id, posts)

        assert inserted == 50
        assert await count(db, "articles") == 50
        assert await count(db, "article_tags") == 100

    async def test_failed_batch_counts_zero(self, db, config):
        """Test that a rejected batch is rolled back and counts as zero."""
        importer = FileImporter(db, config)
        posts = [
            DiscoveredPost(title="Fine", link="https://e.com/1"),
            DiscoveredPost(title="Also fine", link="https://e.com/2"),
        ]

        # No such blog, so the foreign key rejects the batch
        assert await importer.persist_batch("missing-blog", posts) == 0
        assert await count(db, "articles") == 0

    async def test_malformed_post_only_loses_its_batch(self, db, config):
        """Test that a post that cannot be converted rolls back its own batch and no other."""
        importer = FileImporter(db, config)
        blog, _ = await importer.open_blog("Mixed Blog")
        posts = [DiscoveredPost(title=f"P{i}", link=f"https://e.com/{i}") for i in range(100)]
        posts[3].content = 42

        imported = await importer.persist_posts(blog.id, posts)

        assert imported == 50
        cursor = await db.execute("SELECT link FROM articles")
        links = {row["link"] for row in await cursor.fetchall()}
        assert links == {f"https://e.com/{i}" for i in range(50, 100)}

    async def test_persist_posts_in_batches(self, db, config):
        """Test progress after every batch."""
        events = []
        importer = FileImporter(db, config, events.append)
        blog, _ = await importer.open_blog("Big Blog")
        posts = [DiscoveredPost(title=f"P{i}", link=f"https://e.com/{i}") for i in range(120)]

        imported = await importer.persist_posts(blog.id, posts)

        assert imported == 120
        assert [e.imported_items for e in events if e.phase == "persisting"] == [50, 100, 120]
        assert all(e.total_items == 120 for e in events)


class TestHistoryApiImporter:
    """Paginated REST import."""

    def route_feed(self, http, feed_id="7"):
        http.add(
            f"{HISTORY_BASE}/api/v1/feeds/{feed_id}/",
            make_response(json_data={
                "id": feed_id,
                "title": "History Blog",
                "description": "Every post ever",
                "url": "https://h.example.com/feed",
            }),
        )

    async def test_follows_next_pointer(self, db, config, http):
        """Test walking pages through the next pointer."""
        self.route_feed(http)
        posts_url = f"{HISTORY_BASE}/api/v1/feeds/7/posts/"
        next_url = f"{posts_url}?page=2&page_size=500"
        http.add(posts_url, make_response(json_data={
            "count": 3,
            "next": next_url,
            "results": [history_item(1, is_full_text=True), history_item(2)],
        }))
        http.add(next_url, make_response(json_data={
            "count": 3,
            "next": None,
            "results": [history_item(3)],
        }))

        result = await HistoryApiImporter(db, config).run({"base_url": HISTORY_BASE + "/", "feed_id": "7"})

        assert result.total_items == 3
        assert result.imported_items == 3
        assert http.requests[1] == (posts_url, {"page": 1, "page_size": 500})
        assert http.requests[2] == (next_url, None)

        blog = await get_blog(db, result.blog_id)
        assert blog.title == "History Blog"
        assert blog.feed_url == "https://h.example.com/feed"
        assert blog.import_source == "history_api"
        assert blog.post_count == 3

        cursor = await db.execute("SELECT link, is_full_text, pubdate FROM articles ORDER BY link")
        rows = await cursor.fetchall()
        assert [row["is_full_text"] for row in rows] == [1, 0, 0]
        assert rows[0]["pubdate"] == "2020-01-01T00:00:00+00:00"

    async def test_repeated_next_pointer_stops(self, db, config, http):
        """Test that a next pointer back to an already fetched page ends the walk."""
        self.route_feed(http)
        posts_url = f"{HISTORY_BASE}/api/v1/feeds/7/posts/"
        http.add(posts_url, make_response(json_data={
            "count": 10,
            "next": posts_url,
            "results": [history_item(1), history_item(2)],
        }))

        result = await asyncio.wait_for(
            HistoryApiImporter(db, config).run({"base_url": HISTORY_BASE, "feed_id": "7"}),
            timeout=5,
        )

        assert result.imported_items == 2
        assert http.urls().count(posts_url) == 1

    async def test_stops_at_reported_count(self, db, config, http):
        """Test that the walk ends once the server's count has been delivered."""
        self.route_feed(http)
        posts_url = f"{HISTORY_BASE}/api/v1/feeds/7/posts/"
        http.add(posts_url, make_response(json_data={
            "count": 2,
            "next": f"{posts_url}?page=2",
            "results": [history_item(1), history_item(2)],
        }))

        result = await HistoryApiImporter(db, config).run({"base_url": HISTORY_BASE, "feed_id": "7"})

        assert result.total_items == 2
        assert result.imported_items == 2
        assert f"{posts_url}?page=2" not in http.urls()

    async def test_progress_reports_title(self, db, config, http):
        """Test that progress carries the feed title and page number."""
        self.route_feed(http)
        http.add(f"{HISTORY_BASE}/api/v1/feeds/7/posts/", make_response(json_data={
            "count": 1, "next": None, "results": [history_item(1)],
        }))
        events = []

        await HistoryApiImporter(db, config, events.append).run({"base_url": HISTORY_BASE, "feed_id": 7})

        assert any(e.discovered_title == "History Blog" for e in events)
        assert any(e.phase == "fetching page 1" for e in events)

    async def test_missing_feed(self, db, config, http):
        """Test that an unknown feed fails before any blog is created."""
        with pytest.raises(SourceUnreachableError):
            await HistoryApiImporter(db, config).run({"base_url": HISTORY_BASE, "feed_id": "404"})

        assert await count(db, "blogs") == 0

    async def test_list_feeds(self, config, http):
        """Test listing the feeds on an instance."""
        http.add(f"{HISTORY_BASE}/api/v1/feeds/", make_response(json_data={
            "results": [{"id": 7, "title": "History Blog", "url": "https://h.example.com/feed", "count_of_posts": 3}],
        }))

        feeds = await list_feeds("history.example.com/", config)

        assert feeds[0]["id"] == "7"
        assert feeds[0]["title"] == "History Blog"
        assert feeds[0]["count_of_posts"] == 3

    async def test_list_feeds_unreachable(self, config, http):
        """Test listing feeds on an unreachable instance."""
        with pytest.raises(SourceUnreachableError):
            await list_feeds(HISTORY_BASE, config)


class TestFileImporter:
    """JSON file import."""

    def test_export_shape(self):
        """Test recognizing this application's export shape."""
        meta, posts = parse_import_document({
            "blog": {"title": "Exported", "feedUrl": "https://e.com/feed"},
            "articles": [
                {"title": "One", "link": "https://e.com/1", "contentText": "Text", "categories": ["t"]},
                {"title": "No link"},
            ],
        })

        assert meta["title"] == "Exported"
        assert meta["feed_url"] == "https://e.com/feed"
        assert [p.link for p in posts] == ["https://e.com/1"]
        assert posts[0].content_text == "Text"

    def test_history_page_shapes(self):
        """Test recognizing a History API page and a list of pages."""
        page = {"count": 2, "results": [history_item(1), history_item(2)]}

        single_meta, single = parse_import_document(page)
        _, many = parse_import_document([page, {"results": [history_item(3)]}])

        assert single_meta["title"] == "Imported Blog"
        assert len(single) == 2
        assert len(many) == 3

    @pytest.mark.parametrize("document", [{"posts": []}, [], [1, 2], "text", 42])
    def test_unrecognized(self, document):
        """Test that other JSON documents are rejected."""
        with pytest.raises(UnrecognizedFormatError):
            parse_import_document(document)

    async def test_import_export_file(self, db, config, tmp_path):
        """Test importing an export file end to end."""
        path = tmp_path / "blog.json"
        path.write_text(json.dumps({
            "blog": {"title": "From File", "description": "d"},
            "articles": [
                {"title": "One", "link": "https://e.com/1", "contentHtml": "<p>Hello there</p>", "summary": "Hi."},
                {"title": "Two", "link": "https://e.com/2"},
                {"title": "Two again", "link": "https://e.com/2"},
            ],
        }))

        result = await FileImporter(db, config).run({"path": str(path)})

        assert result.total_items == 2
        assert result.imported_items == 2
        blog = await get_blog(db, result.blog_id)
        assert blog.title == "From File"
        assert blog.import_source == "file"
        cursor = await db.execute("SELECT summary, content_text FROM articles WHERE link = 'https://e.com/1'")
        row = await cursor.fetchone()
        assert row["summary"] == "Hi."
        assert row["content_text"] == "Hello there"

    async def test_non_string_fields_are_coerced(self, db, config, tmp_path):
        """Test that loosely typed export fields still import."""
        articles = [{"title": f"Post {i}", "link": f"https://e.com/{i}"} for i in range(60)]
        articles[5].update({"contentHtml": 42, "title": 7, "categories": "solo", "author": ["x"]})
        path = tmp_path / "loose.json"
        path.write_text(json.dumps({"blog": {"title": "Loose"}, "articles": articles}))

        result = await FileImporter(db, config).run({"path": str(path)})

        assert result.imported_items == 60
        cursor = await db.execute(
            "SELECT title, author, content_text FROM articles WHERE link = 'https://e.com/5'"
        )
        row = await cursor.fetchone()
        assert row["title"] == "7"
        assert row["author"] is None
        assert row["content_text"] == "42"
        cursor = await db.execute("SELECT tag FROM article_tags")
        assert [r["tag"] for r in await cursor.fetchall()] == ["solo"]

    async def test_invalid_json(self, db, config, tmp_path):
        """Test that a file that is not JSON fails before any blog is created."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(UnrecognizedFormatError, match="not valid JSON"):
            await FileImporter(db, config).run({"path": str(path)})

        assert await count(db, "blogs") == 0

    async def test_missing_file(self, db, config, tmp_path):
        """Test that a missing file is unreachable."""
        with pytest.raises(SourceUnreachableError):
            await FileImporter(db, config).run({"path": str(tmp_path / "missing.json")})
