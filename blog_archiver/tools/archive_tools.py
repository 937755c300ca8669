"""Blog archive MCP tools.

This module provides MCP tools for importing blogs, tracking import jobs,
browsing imported articles and running the text analysis engine.

NOTE: Never use Optional parameters in MCP tools - they break MCP clients.
Use empty string "" for optional strings and 0 for optional integers.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from mcp.server.fastmcp import Context

from blog_archiver.app_state import get_app_state
from blog_archiver.errors import ArchiveImportError
from blog_archiver.models.schemas import ImportJob, ReadingStatus, SourceKind
from blog_archiver.services.importers import list_feeds
from blog_archiver.services.nlp import TfIdfIndex, find_similar_by_embedding
from blog_archiver.services.orchestrator import ALREADY_RUNNING
from blog_archiver.services.summaries import generate_summaries as run_summary_backlog
from blog_archiver.storage import database

logger = logging.getLogger(__name__)


def _job_to_dict(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "blog_id": job.blog_id,
        "title": job.title,
        "source": job.source.value,
        "status": job.status.value,
        "phase": job.phase,
        "total_items": job.total_items,
        "imported_items": job.imported_items,
        "message": job.message,
        "error": job.error,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "log": job.log,
    }


async def _start(source: SourceKind, params: Dict[str, Any]) -> Dict[str, Any]:
    state = await get_app_state()
    job_id = await state.orchestrator.start(source, params)

    if job_id == ALREADY_RUNNING:
        return {
            "success": False,
            "already_running": True,
            "error": "An import for this source is already running",
        }

    return {
        "success": True,
        "job_id": job_id,
        "message": "Import started. Use list_import_jobs to follow its progress.",
    }


async def start_wayback_import(feed_url: str, ctx: Context = None) -> Dict[str, Any]:
    """Import a blog's history from its RSS/Atom feed and Wayback Machine snapshots.

    Fetches the live feed, walks any further pages the blog platform exposes,
    then samples archived copies of the feed to recover older posts. Runs in
    the background; poll list_import_jobs for progress.

    Args:
        feed_url: RSS/Atom feed URL (https:// is assumed if no scheme)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - job_id: id of the started job
        - already_running: true if this feed is already being imported
        - error: string if success is False
    """
    logger.info(f"start_wayback_import called: feed_url={feed_url}")

    if not feed_url.strip():
        return {"success": False, "error": "feed_url is required"}

    return await _start(SourceKind.WAYBACK, {"feed_url": feed_url.strip()})


async def start_history_import(
    base_url: str,
    feed_id: str,
    ctx: Context = None,
) -> Dict[str, Any]:
    """Import a feed's complete archive from a History API instance.

    Args:
        base_url: Root URL of the History API instance
        feed_id: Feed id on that instance (from list_history_feeds)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - job_id: id of the started job
        - already_running: true if this feed is already being imported
        - error: string if success is False
    """
    logger.info(f"start_history_import called: base_url={base_url}, feed_id={feed_id}")

    if not base_url.strip() or not feed_id.strip():
        return {"success": False, "error": "base_url and feed_id are required"}

    return await _start(
        SourceKind.HISTORY_API,
        {"base_url": base_url.strip(), "feed_id": feed_id.strip()},
    )


async def start_file_import(path: str, ctx: Context = None) -> Dict[str, Any]:
    """Import a blog from a JSON export file.

    Accepts this server's own export format (see export_blog) or History API
    post listings.

    Args:
        path: Path to the JSON file
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - job_id: id of the started job
        - error: string if the file does not exist
    """
    logger.info(f"start_file_import called: path={path}")

    file_path = Path(path).expanduser()
    if not file_path.is_file():
        return {"success": False, "error": f"File not found: {path}"}

    return await _start(SourceKind.FILE, {"path": str(file_path)})


async def list_history_feeds(base_url: str, ctx: Context = None) -> Dict[str, Any]:
    """List the feeds archived by a History API instance.

    Args:
        base_url: Root URL of the History API instance
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of feeds
        - feeds: list of feed objects with id, title, description, url, count_of_posts
    """
    logger.info(f"list_history_feeds called: base_url={base_url}")

    state = await get_app_state()
    try:
        feeds = await list_feeds(base_url, state.config)
    except ArchiveImportError as e:
        return {"success": False, "error": str(e)}

    return {"success": True, "count": len(feeds), "feeds": feeds}


async def list_import_jobs(ctx: Context = None) -> Dict[str, Any]:
    """List running and recently finished import jobs.

    Completed jobs disappear on their own after a short delay. Failed jobs
    stay until dismissed.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of jobs
        - jobs: list of job objects with status, phase, counts, message, error and log
    """
    state = await get_app_state()
    jobs = sorted(state.orchestrator.jobs().values(), key=lambda job: job.started_at)

    return {
        "success": True,
        "count": len(jobs),
        "jobs": [_job_to_dict(job) for job in jobs],
    }


async def dismiss_import_job(job_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Remove an import job from the job list.

    Does not stop a running import; it only stops it being reported.

    Args:
        job_id: Job id (from list_import_jobs)
        ctx: MCP Context object (injected automatically)
    """
    logger.info(f"dismiss_import_job called: job_id={job_id}")

    state = await get_app_state()
    await state.orchestrator.dismiss(job_id)
    return {"success": True, "message": f"Dismissed job {job_id}"}


async def list_blogs(ctx: Context = None) -> Dict[str, Any]:
    """List all imported blogs with post counts, date ranges and reading progress.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of blogs
        - blogs: list of blog objects
    """
    state = await get_app_state()
    blogs = await database.list_blogs(state.db)

    return {
        "success": True,
        "count": len(blogs),
        "blogs": blogs,
    }


async def remove_blog(blog_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Remove a blog and everything imported for it.

    This permanently deletes the blog, its articles, tags, reading progress
    and search index entries. This action cannot be undone.

    Args:
        blog_id: Blog id (from list_blogs)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - articles_deleted: count of articles removed
        - error: string if blog not found
    """
    logger.info(f"remove_blog called: blog_id={blog_id}")

    state = await get_app_state()
    success, article_count = await database.delete_blog(state.db, blog_id)

    if success:
        return {
            "success": True,
            "message": f"Removed blog {blog_id} and {article_count} articles",
            "articles_deleted": article_count,
        }
    else:
        return {
            "success": False,
            "error": f"Blog {blog_id} not found",
        }


async def list_articles(
    blog_id: str,
    status: str = "",
    sort: str = "pubdate",
    ascending: bool = False,
    search: str = "",
    limit: int = 50,
    ctx: Context = None,
) -> Dict[str, Any]:
    """List a blog's articles.

    Args:
        blog_id: Blog id (from list_blogs)
        status: Only articles with this reading status: unread, in_progress or read
            (empty string for all)
        sort: pubdate, title or reading_time
        ascending: Oldest/shortest/A-Z first instead of the reverse
        search: Full-text search over title and body (empty string for no search)
        limit: Maximum number of articles to return (default: 50)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of articles returned
        - articles: list of article objects with summary, tags and reading status
    """
    logger.info(
        f"list_articles called: blog_id={blog_id}, status={status}, sort={sort}, "
        f"search={search}, limit={limit}"
    )

    reading_status = None
    if status:
        try:
            reading_status = ReadingStatus(status)
        except ValueError:
            return {
                "success": False,
                "error": f"Invalid status: {status}. Use unread, in_progress or read",
            }

    if sort not in database.SORT_COLUMNS:
        return {
            "success": False,
            "error": f"Invalid sort: {sort}. Use one of {', '.join(database.SORT_COLUMNS)}",
        }

    state = await get_app_state()
    articles = await database.list_articles(
        state.db,
        blog_id,
        status=reading_status,
        sort=sort,
        descending=not ascending,
        search=search or None,
        limit=limit,
    )

    return {
        "success": True,
        "count": len(articles),
        "articles": [
            {
                "id": a.id,
                "title": a.title,
                "link": a.link,
                "author": a.author,
                "pubdate": a.pubdate,
                "summary": a.summary,
                "word_count": a.word_count,
                "reading_time_minutes": a.reading_time_minutes,
                "is_full_text": a.is_full_text,
                "status": a.status.value,
                "tags": a.tags,
            }
            for a in articles
        ],
    }


async def set_reading_status(article_id: str, status: str, ctx: Context = None) -> Dict[str, Any]:
    """Set an article's reading status.

    Args:
        article_id: Article id (from list_articles)
        status: unread, in_progress or read
        ctx: MCP Context object (injected automatically)
    """
    logger.info(f"set_reading_status called: article_id={article_id}, status={status}")

    try:
        reading_status = ReadingStatus(status)
    except ValueError:
        return {
            "success": False,
            "error": f"Invalid status: {status}. Use unread, in_progress or read",
        }

    state = await get_app_state()
    if not await database.set_reading_status(state.db, article_id, reading_status):
        return {
            "success": False,
            "error": f"Article with id {article_id} not found",
        }

    return {"success": True, "article_id": article_id, "status": reading_status.value}


async def start_reading(article_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Open a reading session for an article.

    An unread article moves to in_progress. Pass the returned session_id to
    finish_reading when done.

    Args:
        article_id: Article id (from list_articles)
        ctx: MCP Context object (injected automatically)
    """
    logger.info(f"start_reading called: article_id={article_id}")

    state = await get_app_state()
    if await database.get_article_blog_id(state.db, article_id) is None:
        return {"success": False, "error": f"Article with id {article_id} not found"}

    status = await database.get_reading_status(state.db, article_id)
    if status is ReadingStatus.UNREAD:
        status = ReadingStatus.IN_PROGRESS
        await database.set_reading_status(state.db, article_id, status)

    session_id = await database.start_reading_session(state.db, article_id)
    return {
        "success": True,
        "article_id": article_id,
        "session_id": session_id or 0,
        "status": status.value,
    }


async def finish_reading(session_id: int, mark_read: bool = True, ctx: Context = None) -> Dict[str, Any]:
    """Close a reading session opened by start_reading.

    Args:
        session_id: Session id returned by start_reading
        mark_read: Also mark the article as read (default: true)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - article_id: the article that was being read
        - duration_seconds: length of the session
        - status: the article's reading status afterwards
    """
    logger.info(f"finish_reading called: session_id={session_id}, mark_read={mark_read}")

    state = await get_app_state()
    session = await database.end_reading_session(state.db, session_id)
    if session is None:
        return {"success": False, "error": f"No open reading session with id {session_id}"}

    article_id = session["article_id"]
    if mark_read:
        await database.set_reading_status(state.db, article_id, ReadingStatus.READ)

    status = await database.get_reading_status(state.db, article_id)
    return {
        "success": True,
        "article_id": article_id,
        "duration_seconds": session["duration_seconds"],
        "status": status.value,
    }


async def generate_summaries(blog_id: str = "", ctx: Context = None) -> Dict[str, Any]:
    """Generate TextRank summaries for articles that don't have one yet.

    Args:
        blog_id: Only this blog's articles (empty string for all blogs)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - total: articles that needed a summary
        - summarized: summaries written
        - failed: ids of articles that could not be summarized
    """
    logger.info(f"generate_summaries called: blog_id={blog_id}")

    state = await get_app_state()
    report = await run_summary_backlog(
        state.db,
        blog_id or None,
        num_sentences=state.config.summary_sentences,
    )

    return {
        "success": True,
        "total": report.total,
        "summarized": report.summarized,
        "failed": report.failed,
    }


async def store_article_embedding(
    article_id: str,
    embedding: List[float],
    model: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Store a precomputed embedding vector for an article.

    Vectors are produced outside this server. find_similar_articles with
    use_embeddings=true ranks articles by these vectors.

    Args:
        article_id: Article id (from list_articles)
        embedding: The vector
        model: Name of the model that produced it (empty string if unknown)
        ctx: MCP Context object (injected automatically)
    """
    logger.info(f"store_article_embedding called: article_id={article_id}, dims={len(embedding)}")

    if not embedding:
        return {"success": False, "error": "Embedding must not be empty"}

    state = await get_app_state()
    if await database.get_article_blog_id(state.db, article_id) is None:
        return {"success": False, "error": f"Article with id {article_id} not found"}

    await database.save_embedding(state.db, article_id, embedding, model or "unknown")
    return {"success": True, "article_id": article_id, "dimensions": len(embedding)}


async def find_similar_articles(
    article_id: str,
    top_n: int = 5,
    use_embeddings: bool = False,
    ctx: Context = None,
) -> Dict[str, Any]:
    """Find articles similar to a given article within the same blog.

    Uses TF-IDF over article text by default, or stored embedding vectors
    when use_embeddings is true.

    Args:
        article_id: Article id (from list_articles)
        top_n: Number of similar articles to return (default: 5)
        use_embeddings: Score with stored embeddings instead of TF-IDF
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - similar: list of {id, title, link, score}, best match first
    """
    logger.info(f"find_similar_articles called: article_id={article_id}, top_n={top_n}")

    state = await get_app_state()
    blog_id = await database.get_article_blog_id(state.db, article_id)
    if blog_id is None:
        return {"success": False, "error": f"Article with id {article_id} not found"}

    if use_embeddings:
        embeddings = await database.load_embeddings(state.db, blog_id)
        if article_id not in embeddings:
            return {"success": False, "error": f"No embedding stored for article {article_id}"}
        similar = find_similar_by_embedding(article_id, embeddings, top_n=top_n)
    else:
        texts = await database.get_article_texts(state.db, blog_id)
        similar = TfIdfIndex.build(texts).find_similar(article_id, top_n=top_n)

    titles = await database.get_article_titles(state.db, [s.id for s in similar])

    return {
        "success": True,
        "count": len(similar),
        "similar": [
            {
                "id": s.id,
                "title": titles.get(s.id, (None, None))[0],
                "link": titles.get(s.id, (None, None))[1],
                "score": round(s.score, 4),
            }
            for s in similar
        ],
    }


async def export_blog(blog_id: str, path: str = "", ctx: Context = None) -> Dict[str, Any]:
    """Export a blog to this server's JSON format.

    The file can be imported again with start_file_import.

    Args:
        blog_id: Blog id (from list_blogs)
        path: Write the export to this file (empty string returns it inline)
        ctx: MCP Context object (injected automatically)
    """
    logger.info(f"export_blog called: blog_id={blog_id}, path={path}")

    state = await get_app_state()
    data = await database.export_blog(state.db, blog_id)
    if data is None:
        return {"success": False, "error": f"Blog {blog_id} not found"}

    if not path:
        return {"success": True, "export": data}

    out = Path(path).expanduser()
    text = json.dumps(data, ensure_ascii=False, indent=2)
    try:
        await asyncio.to_thread(out.write_text, text, encoding="utf-8")
    except OSError as e:
        return {"success": False, "error": f"Could not write {out}: {e}"}

    return {
        "success": True,
        "path": str(out),
        "articles_exported": len(data["articles"]),
    }


archive_tools = [
    start_wayback_import,
    start_history_import,
    start_file_import,
    list_history_feeds,
    list_import_jobs,
    dismiss_import_job,
    list_blogs,
    remove_blog,
    list_articles,
    set_reading_status,
    start_reading,
    finish_reading,
    generate_summaries,
    store_article_embedding,
    find_similar_articles,
    export_blog,
]
