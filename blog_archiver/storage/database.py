"""Database storage for blog_archiver.

This module provides async SQLite operations for blogs, articles, tags,
reading progress, embeddings and import records, plus an FTS5 index over
article title and text.
Database location: ~/.blog_archiver/blog_archiver.db (or BLOG_ARCHIVER_DB_PATH env var)

Every function takes the connection explicitly. Writes go through
transaction(), which serializes write transactions per connection so that
concurrent import jobs sharing one connection never commit or roll back
each other's work.
"""

import asyncio
import logging
import re
from array import array
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple
from weakref import WeakKeyDictionary

import aiosqlite

from blog_archiver.config import get_config
from blog_archiver.models.schemas import Article, Blog, ReadingStatus
from blog_archiver.services.text_utils import generate_id, utc_now

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "pubdate": "a.pubdate",
    "title": "a.title",
    "reading_time": "a.reading_time_minutes",
}

_WORD = re.compile(r"\w+")

_write_locks: "WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = WeakKeyDictionary()


def _get_db_path() -> Path:
    """Get the database path from configuration (BLOG_ARCHIVER_DB_PATH overrides)."""
    return Path(get_config().db_path)


# Singleton connection
_db_connection: Optional[aiosqlite.Connection] = None


async def get_database() -> aiosqlite.Connection:
    """Get or create a singleton database connection.

    Returns:
        Active database connection
    """
    global _db_connection

    if _db_connection is None:
        db_path = _get_db_path()
        # Ensure directory exists
        db_path.parent.mkdir(parents=True, exist_ok=True)

        _db_connection = await aiosqlite.connect(db_path)
        _db_connection.row_factory = aiosqlite.Row
        await _db_connection.execute("PRAGMA journal_mode = WAL")
        await init_database(_db_connection)

    return _db_connection


async def init_database(db: aiosqlite.Connection) -> None:
    """Create tables, indexes and the search index if they don't exist."""
    await db.execute("PRAGMA foreign_keys = ON")

    await db.executescript("""
        CREATE TABLE IF NOT EXISTS blogs (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            feed_url TEXT,
            site_url TEXT,
            post_count INTEGER NOT NULL DEFAULT 0,
            earliest_date TEXT,
            latest_date TEXT,
            imported_at TEXT NOT NULL,
            import_source TEXT,
            total_word_count INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            blog_id TEXT NOT NULL REFERENCES blogs(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            link TEXT NOT NULL,
            author TEXT,
            pubdate TEXT,
            content_html TEXT,
            content_text TEXT,
            summary TEXT,
            word_count INTEGER NOT NULL DEFAULT 0,
            reading_time_minutes INTEGER NOT NULL DEFAULT 0,
            is_full_text INTEGER NOT NULL DEFAULT 0,
            imported_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS article_tags (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
            tag TEXT NOT NULL,
            UNIQUE (article_id, tag)
        );

        CREATE TABLE IF NOT EXISTS reading_progress (
            article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'unread',
            started_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS reading_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            duration_seconds INTEGER
        );

        CREATE TABLE IF NOT EXISTS article_embeddings (
            article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            embedding BLOB NOT NULL,
            model TEXT NOT NULL,
            computed_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS import_jobs (
            id TEXT PRIMARY KEY,
            blog_id TEXT NOT NULL REFERENCES blogs(id) ON DELETE CASCADE,
            source TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'running',
            total_items INTEGER NOT NULL DEFAULT 0,
            imported_items INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            started_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_blog_link ON articles(blog_id, link);
        CREATE INDEX IF NOT EXISTS idx_articles_blog_pubdate ON articles(blog_id, pubdate);
        CREATE INDEX IF NOT EXISTS idx_article_tags_tag ON article_tags(tag);
        CREATE INDEX IF NOT EXISTS idx_reading_progress_status ON reading_progress(status);

        CREATE VIRTUAL TABLE IF NOT EXISTS articles_fts USING fts5(
            title,
            content_text,
            content='articles',
            content_rowid='rowid'
        );
    """)

    await db.commit()


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run a block of writes as one transaction.

    Commits when the block exits normally, rolls back and re-raises otherwise.
    """
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()

    async with lock:
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


def _row_to_blog(row: aiosqlite.Row) -> Blog:
    return Blog(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        feed_url=row["feed_url"],
        site_url=row["site_url"],
        post_count=row["post_count"],
        earliest_date=row["earliest_date"],
        latest_date=row["latest_date"],
        imported_at=row["imported_at"],
        import_source=row["import_source"],
        total_word_count=row["total_word_count"],
    )


# ── Blogs ────────────────────────────────────────────────────────────


async def create_blog(
    db: aiosqlite.Connection,
    title: str,
    import_source: str,
    description: Optional[str] = None,
    feed_url: Optional[str] = None,
    site_url: Optional[str] = None,
) -> Blog:
    """Insert a new blog row with zeroed counters."""
    blog = Blog(
        id=generate_id(),
        title=title,
        description=description,
        feed_url=feed_url,
        site_url=site_url,
        post_count=0,
        earliest_date=None,
        latest_date=None,
        imported_at=utc_now(),
        import_source=import_source,
        total_word_count=0,
    )

    async with transaction(db):
        await db.execute(
            """
            INSERT INTO blogs (id, title, description, feed_url, site_url, imported_at, import_source)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                blog.id,
                blog.title,
                blog.description,
                blog.feed_url,
                blog.site_url,
                blog.imported_at,
                blog.import_source,
            ),
        )

    return blog


async def get_blog(db: aiosqlite.Connection, blog_id: str) -> Optional[Blog]:
    cursor = await db.execute("SELECT * FROM blogs WHERE id = ?", (blog_id,))
    row = await cursor.fetchone()
    return _row_to_blog(row) if row else None


async def list_blogs(db: aiosqlite.Connection) -> List[dict]:
    """List all blogs with reading progress counts.

    Returns:
        List of dicts with blog info, read_count and in_progress_count
    """
    cursor = await db.execute("""
        SELECT b.*,
               SUM(CASE WHEN rp.status = 'read' THEN 1 ELSE 0 END) AS read_count,
               SUM(CASE WHEN rp.status = 'in_progress' THEN 1 ELSE 0 END) AS in_progress_count
        FROM blogs b
        LEFT JOIN articles a ON a.blog_id = b.id
        LEFT JOIN reading_progress rp ON rp.article_id = a.id
        GROUP BY b.id
        ORDER BY b.title
    """)

    blogs = []
    async for row in cursor:
        blog = _row_to_blog(row)
        blogs.append({
            **blog.__dict__,
            "read_count": row["read_count"] or 0,
            "in_progress_count": row["in_progress_count"] or 0,
        })

    return blogs


async def recompute_blog_stats(db: aiosqlite.Connection, blog_id: str) -> Optional[Blog]:
    """Recompute post count, date range and word total from persisted articles."""
    async with transaction(db):
        await db.execute(
            """
            UPDATE blogs SET
                post_count = (SELECT COUNT(*) FROM articles WHERE blog_id = :id),
                earliest_date = (SELECT MIN(pubdate) FROM articles WHERE blog_id = :id),
                latest_date = (SELECT MAX(pubdate) FROM articles WHERE blog_id = :id),
                total_word_count = (
                    SELECT COALESCE(SUM(word_count), 0) FROM articles WHERE blog_id = :id
                )
            WHERE id = :id
            """,
            {"id": blog_id},
        )

    return await get_blog(db, blog_id)


async def delete_blog(db: aiosqlite.Connection, blog_id: str) -> Tuple[bool, int]:
    """Remove a blog and everything that depends on it.

    The search index is an external-content FTS table, so its rows are
    removed explicitly before the cascade takes the articles away.

    Returns:
        Tuple of (success, article_count_deleted)
    """
    cursor = await db.execute(
        "SELECT COUNT(*) AS count FROM articles WHERE blog_id = ?", (blog_id,)
    )
    article_count = (await cursor.fetchone())["count"]

    async with transaction(db):
        await db.execute(
            """
            INSERT INTO articles_fts (articles_fts, rowid, title, content_text)
            SELECT 'delete', rowid, title, content_text FROM articles
            WHERE blog_id = ? AND content_text IS NOT NULL
            """,
            (blog_id,),
        )
        await db.execute("DELETE FROM import_jobs WHERE blog_id = ?", (blog_id,))
        cursor = await db.execute("DELETE FROM blogs WHERE id = ?", (blog_id,))
        deleted = cursor.rowcount > 0

    if not deleted:
        return (False, 0)

    logger.info(f"Deleted blog {blog_id} and {article_count} articles")
    return (True, article_count)


# ── Import records ───────────────────────────────────────────────────


async def create_import_record(db: aiosqlite.Connection, blog_id: str, source: str) -> str:
    record_id = generate_id()
    async with transaction(db):
        await db.execute(
            """
            INSERT INTO import_jobs (id, blog_id, source, state, started_at)
            VALUES (?, ?, ?, 'running', ?)
            """,
            (record_id, blog_id, source, utc_now()),
        )
    return record_id


async def finish_import_record(
    db: aiosqlite.Connection,
    record_id: str,
    state: str,
    total_items: int,
    imported_items: int,
    error: Optional[str] = None,
) -> None:
    async with transaction(db):
        await db.execute(
            """
            UPDATE import_jobs
            SET state = ?, total_items = ?, imported_items = ?, last_error = ?, completed_at = ?
            WHERE id = ?
            """,
            (state, total_items, imported_items, error, utc_now(), record_id),
        )


async def get_import_records(db: aiosqlite.Connection, blog_id: str) -> List[dict]:
    cursor = await db.execute(
        "SELECT * FROM import_jobs WHERE blog_id = ? ORDER BY started_at", (blog_id,)
    )
    return [dict(row) for row in await cursor.fetchall()]


# ── Articles ─────────────────────────────────────────────────────────


async def insert_article(
    db: aiosqlite.Connection,
    blog_id: str,
    title: str,
    link: str,
    author: Optional[str],
    pubdate: Optional[str],
    content_html: Optional[str],
    content_text: Optional[str],
    word_count: int,
    reading_time_minutes: int,
    is_full_text: bool,
    imported_at: str,
    tags: Iterable[str] = (),
    summary: Optional[str] = None,
) -> bool:
    """Insert one article with its tags and search-index row.

    Must run inside transaction(). A (blog, link) pair that already exists
    is ignored. Tag and search-index failures are logged and skipped; they
    never undo the article itself.

    Returns:
        True if a new article row was written
    """
    article_id = generate_id()
    cursor = await db.execute(
        """
        INSERT OR IGNORE INTO articles (
            id, blog_id, title, link, author, pubdate, content_html, content_text,
            summary, word_count, reading_time_minutes, is_full_text, imported_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            article_id,
            blog_id,
            title,
            link,
            author,
            pubdate,
            content_html,
            content_text,
            summary,
            word_count,
            reading_time_minutes,
            1 if is_full_text else 0,
            imported_at,
        ),
    )
    if cursor.rowcount == 0:
        return False

    for tag in tags:
        try:
            await db.execute(
                "INSERT INTO article_tags (article_id, tag) VALUES (?, ?)",
                (article_id, tag),
            )
        except aiosqlite.Error as e:
            logger.warning(f"Skipping tag {tag!r} on {link}: {e}")

    if content_text:
        try:
            await db.execute(
                """
                INSERT INTO articles_fts (rowid, title, content_text)
                SELECT rowid, title, content_text FROM articles WHERE id = ?
                """,
                (article_id,),
            )
        except aiosqlite.Error as e:
            logger.warning(f"Search index insert failed for {link}: {e}")

    return True


async def get_article_tags(
    db: aiosqlite.Connection, article_ids: Sequence[str]
) -> Dict[str, List[str]]:
    """Batch fetch tags for a set of articles."""
    if not article_ids:
        return {}

    placeholders = ",".join("?" * len(article_ids))
    cursor = await db.execute(
        f"""
        SELECT article_id, tag FROM article_tags
        WHERE article_id IN ({placeholders})
        ORDER BY id
        """,
        list(article_ids),
    )

    tags: Dict[str, List[str]] = {}
    async for row in cursor:
        tags.setdefault(row["article_id"], []).append(row["tag"])
    return tags


def _fts_query(text: str) -> str:
    """Quote each word so user input is never parsed as FTS syntax."""
    return " ".join(f'"{term}"' for term in _WORD.findall(text))


async def list_articles(
    db: aiosqlite.Connection,
    blog_id: str,
    status: Optional[ReadingStatus] = None,
    sort: str = "pubdate",
    descending: bool = True,
    search: Optional[str] = None,
    limit: int = 50,
) -> List[Article]:
    """List a blog's articles with optional status filter, sort and full-text search.

    Articles without a value in the sort column always sort last.
    """
    query = """
        SELECT a.id, a.blog_id, a.title, a.link, a.author, a.pubdate, a.summary,
               a.word_count, a.reading_time_minutes, a.is_full_text,
               COALESCE(rp.status, 'unread') AS status
        FROM articles a
        LEFT JOIN reading_progress rp ON rp.article_id = a.id
    """
    params: List = []

    match = _fts_query(search) if search else ""
    if match:
        query += " JOIN articles_fts ON articles_fts.rowid = a.rowid"
        query += " WHERE a.blog_id = ? AND articles_fts MATCH ?"
        params.extend([blog_id, match])
    else:
        query += " WHERE a.blog_id = ?"
        params.append(blog_id)

    if status is not None:
        if status is ReadingStatus.UNREAD:
            query += " AND (rp.status IS NULL OR rp.status = 'unread')"
        else:
            query += " AND rp.status = ?"
            params.append(status.value)

    column = SORT_COLUMNS.get(sort, SORT_COLUMNS["pubdate"])
    direction = "DESC" if descending else "ASC"
    query += f" ORDER BY {column} IS NULL ASC, {column} {direction}, a.id LIMIT ?"
    params.append(limit)

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()

    tags = await get_article_tags(db, [row["id"] for row in rows])

    return [
        Article(
            id=row["id"],
            blog_id=row["blog_id"],
            title=row["title"],
            link=row["link"],
            author=row["author"],
            pubdate=row["pubdate"],
            summary=row["summary"],
            word_count=row["word_count"],
            reading_time_minutes=row["reading_time_minutes"],
            is_full_text=bool(row["is_full_text"]),
            status=ReadingStatus(row["status"]),
            tags=tags.get(row["id"], []),
        )
        for row in rows
    ]


async def get_article_blog_id(db: aiosqlite.Connection, article_id: str) -> Optional[str]:
    cursor = await db.execute("SELECT blog_id FROM articles WHERE id = ?", (article_id,))
    row = await cursor.fetchone()
    return row["blog_id"] if row else None


async def get_article_titles(
    db: aiosqlite.Connection, article_ids: Iterable[str]
) -> Dict[str, Tuple[str, str]]:
    """Map article id to (title, link) for the given ids."""
    ids = list(article_ids)
    if not ids:
        return {}

    placeholders = ",".join("?" * len(ids))
    cursor = await db.execute(
        f"SELECT id, title, link FROM articles WHERE id IN ({placeholders})", ids
    )
    return {row["id"]: (row["title"], row["link"]) for row in await cursor.fetchall()}


async def get_article_texts(
    db: aiosqlite.Connection, blog_id: Optional[str] = None
) -> List[Tuple[str, str]]:
    """(id, content_text) for every article that has text, optionally for one blog."""
    query = "SELECT id, content_text FROM articles WHERE content_text IS NOT NULL"
    params: List = []
    if blog_id:
        query += " AND blog_id = ?"
        params.append(blog_id)

    cursor = await db.execute(query, params)
    return [(row["id"], row["content_text"]) for row in await cursor.fetchall()]


async def articles_needing_summary(
    db: aiosqlite.Connection,
    blog_id: Optional[str] = None,
    min_length: int = 100,
) -> List[Tuple[str, str]]:
    """(id, content_text) for articles with enough text but no summary yet."""
    query = """
        SELECT id, content_text FROM articles
        WHERE summary IS NULL AND content_text IS NOT NULL AND length(content_text) > ?
    """
    params: List = [min_length]
    if blog_id:
        query += " AND blog_id = ?"
        params.append(blog_id)
    query += " ORDER BY pubdate"

    cursor = await db.execute(query, params)
    return [(row["id"], row["content_text"]) for row in await cursor.fetchall()]


async def update_summary(db: aiosqlite.Connection, article_id: str, summary: str) -> None:
    async with transaction(db):
        await db.execute(
            "UPDATE articles SET summary = ? WHERE id = ?", (summary, article_id)
        )


async def export_blog(db: aiosqlite.Connection, blog_id: str) -> Optional[dict]:
    """Export a blog in this application's own file format.

    The File importer accepts the result unchanged.
    """
    blog = await get_blog(db, blog_id)
    if blog is None:
        return None

    cursor = await db.execute(
        """
        SELECT id, title, link, pubdate, author, content_html, content_text, summary
        FROM articles WHERE blog_id = ? ORDER BY pubdate IS NULL, pubdate, link
        """,
        (blog_id,),
    )
    rows = await cursor.fetchall()
    tags = await get_article_tags(db, [row["id"] for row in rows])

    return {
        "blog": {
            "title": blog.title,
            "description": blog.description,
            "feedUrl": blog.feed_url,
            "siteUrl": blog.site_url,
        },
        "articles": [
            {
                "title": row["title"],
                "link": row["link"],
                "pubdate": row["pubdate"],
                "author": row["author"],
                "categories": tags.get(row["id"], []),
                "contentHtml": row["content_html"],
                "contentText": row["content_text"],
                "summary": row["summary"],
            }
            for row in rows
        ],
    }


# ── Reading progress ─────────────────────────────────────────────────


async def set_reading_status(
    db: aiosqlite.Connection, article_id: str, status: ReadingStatus
) -> bool:
    """Set an article's reading status.

    Returns:
        False if the article does not exist
    """
    cursor = await db.execute("SELECT 1 FROM articles WHERE id = ?", (article_id,))
    if await cursor.fetchone() is None:
        return False

    now = utc_now()
    async with transaction(db):
        await db.execute(
            """
            INSERT INTO reading_progress (article_id, status, started_at, completed_at)
            VALUES (:id, :status, :started, :completed)
            ON CONFLICT(article_id) DO UPDATE SET
                status = excluded.status,
                started_at = COALESCE(reading_progress.started_at, excluded.started_at),
                completed_at = excluded.completed_at
            """,
            {
                "id": article_id,
                "status": status.value,
                "started": now if status is not ReadingStatus.UNREAD else None,
                "completed": now if status is ReadingStatus.READ else None,
            },
        )
    return True


async def get_reading_status(db: aiosqlite.Connection, article_id: str) -> ReadingStatus:
    """An article's reading status; articles never touched are unread."""
    cursor = await db.execute(
        "SELECT status FROM reading_progress WHERE article_id = ?", (article_id,)
    )
    row = await cursor.fetchone()
    return ReadingStatus(row["status"]) if row else ReadingStatus.UNREAD


async def start_reading_session(db: aiosqlite.Connection, article_id: str) -> Optional[int]:
    """Open a reading session. Bookkeeping only: failures are logged and return None."""
    try:
        async with transaction(db):
            cursor = await db.execute(
                "INSERT INTO reading_sessions (article_id, started_at) VALUES (?, ?)",
                (article_id, utc_now()),
            )
        return cursor.lastrowid
    except aiosqlite.Error as e:
        logger.debug(f"Could not start reading session for {article_id}: {e}")
        return None


async def end_reading_session(db: aiosqlite.Connection, session_id: int) -> Optional[dict]:
    """Close a reading session and record its duration.

    Returns:
        Dict with article_id and duration_seconds, or None if no open session
        had that id. Failures are logged and also return None.
    """
    try:
        async with transaction(db):
            cursor = await db.execute(
                """
                UPDATE reading_sessions
                SET ended_at = :now,
                    duration_seconds = CAST(
                        (julianday(:now) - julianday(started_at)) * 86400 AS INTEGER
                    )
                WHERE id = :id AND ended_at IS NULL
                """,
                {"now": utc_now(), "id": session_id},
            )
            if cursor.rowcount == 0:
                return None
            cursor = await db.execute(
                "SELECT article_id, duration_seconds FROM reading_sessions WHERE id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        logger.debug(f"Could not end reading session {session_id}: {e}")
        return None

    return {"article_id": row["article_id"], "duration_seconds": row["duration_seconds"]}


# ── Embeddings ───────────────────────────────────────────────────────


async def save_embedding(
    db: aiosqlite.Connection,
    article_id: str,
    vector: Sequence[float],
    model: str,
) -> None:
    """Store a precomputed embedding as a float32 blob."""
    blob = array("f", vector).tobytes()
    async with transaction(db):
        await db.execute(
            """
            INSERT INTO article_embeddings (article_id, embedding, model, computed_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(article_id) DO UPDATE SET
                embedding = excluded.embedding,
                model = excluded.model,
                computed_at = excluded.computed_at
            """,
            (article_id, blob, model, utc_now()),
        )


async def load_embeddings(
    db: aiosqlite.Connection,
    blog_id: Optional[str] = None,
    model: Optional[str] = None,
) -> Dict[str, List[float]]:
    query = """
        SELECT e.article_id, e.embedding FROM article_embeddings e
        JOIN articles a ON a.id = e.article_id
        WHERE 1=1
    """
    params: List = []
    if blog_id:
        query += " AND a.blog_id = ?"
        params.append(blog_id)
    if model:
        query += " AND e.model = ?"
        params.append(model)

    cursor = await db.execute(query, params)
    embeddings = {}
    async for row in cursor:
        vector = array("f")
        vector.frombytes(row["embedding"])
        embeddings[row["article_id"]] = vector.tolist()
    return embeddings
