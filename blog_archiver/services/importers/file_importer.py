"""JSON file importer.

Recognized shapes:

* This application's own export:
  {"blog": {title, description, feedUrl, siteUrl},
   "articles": [{title, link, pubdate, author, categories, contentHtml, contentText, summary}]}
* A History API page: {"count": N, "results": [{title, description, link, pubdate, ...}]}
* A JSON array of History API pages
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from blog_archiver.errors import SourceUnreachableError, UnrecognizedFormatError
from blog_archiver.models.schemas import DiscoveredPost, ImportResult, SourceKind
from blog_archiver.services.importers.base import BaseImporter
from blog_archiver.services.importers.history_api import history_post_to_post
from blog_archiver.services.text_utils import as_tags, as_text, normalize_date

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Imported Blog"


def _export_article_to_post(item: Dict[str, Any]) -> Optional[DiscoveredPost]:
    link = (as_text(item.get("link")) or "").strip()
    if not link:
        return None

    return DiscoveredPost(
        title=(as_text(item.get("title")) or "").strip() or "Untitled",
        link=link,
        published=normalize_date(item.get("pubdate")),
        author=as_text(item.get("author")) or None,
        categories=as_tags(item.get("categories")),
        content=as_text(item.get("contentHtml")) or None,
        content_text=as_text(item.get("contentText")),
        summary=as_text(item.get("summary")) or None,
    )


def parse_import_document(data: Any) -> Tuple[Dict[str, Optional[str]], List[DiscoveredPost]]:
    """Recognize an import document.

    Returns:
        Tuple of (blog metadata, posts)

    Raises:
        UnrecognizedFormatError: If the document matches no supported shape
    """
    if isinstance(data, dict) and isinstance(data.get("blog"), dict) and isinstance(data.get("articles"), list):
        blog = data["blog"]
        meta = {
            "title": (as_text(blog.get("title")) or "").strip() or DEFAULT_TITLE,
            "description": as_text(blog.get("description")),
            "feed_url": as_text(blog.get("feedUrl")),
            "site_url": as_text(blog.get("siteUrl")),
        }
        items = [item for item in data["articles"] if isinstance(item, dict)]
        return meta, [post for post in map(_export_article_to_post, items) if post is not None]

    if isinstance(data, dict) and isinstance(data.get("results"), list):
        pages = [data]
    elif isinstance(data, list) and data and all(
        isinstance(page, dict) and isinstance(page.get("results"), list) for page in data
    ):
        pages = data
    else:
        raise UnrecognizedFormatError(
            "Unrecognized JSON format. Expected a History API response or a blog export."
        )

    posts = []
    for page in pages:
        for item in page["results"]:
            if isinstance(item, dict):
                post = history_post_to_post(item)
                if post is not None:
                    posts.append(post)

    meta = {"title": DEFAULT_TITLE, "description": None, "feed_url": None, "site_url": None}
    return meta, posts


class FileImporter(BaseImporter):
    """Imports a blog from a JSON file on disk.

    Params:
        path: Path to the JSON file
    """

    source = SourceKind.FILE

    async def run(self, params: Dict[str, Any]) -> ImportResult:
        path = Path(params["path"]).expanduser()
        self.emit("discovering", 0, 0, "Reading file...")

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise SourceUnreachableError(f"Could not read {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise UnrecognizedFormatError(f"{path.name} is not valid JSON: {e}") from e

        meta, posts = parse_import_document(data)
        logger.info(f"Parsed {len(posts)} posts from {path}")
        self.emit(
            "discovering",
            len(posts),
            0,
            f"Found {len(posts)} articles. Importing...",
            discovered_title=meta["title"],
        )

        return await self.store(posts, **meta)
