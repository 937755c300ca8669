"""History API importer.

Talks to a feed-history service that has already crawled a blog's full
archive and serves it over a paginated REST API:

    GET {base}/api/v1/feeds/                      list feeds
    GET {base}/api/v1/feeds/{id}/                 feed metadata
    GET {base}/api/v1/feeds/{id}/posts/?page=N    posts, {count, next, previous, results}
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from blog_archiver.config import ServerConfig
from blog_archiver.errors import InvalidFeedError, SourceUnreachableError
from blog_archiver.models.schemas import DiscoveredPost, ImportResult, SourceKind
from blog_archiver.services.fetching import fetch_with_retry, json_client
from blog_archiver.services.importers.base import BaseImporter
from blog_archiver.services.text_utils import as_tags, as_text, normalize_date

logger = logging.getLogger(__name__)

_HAS_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def normalize_base_url(base_url: str) -> str:
    base_url = base_url.strip().rstrip("/")
    if not _HAS_SCHEME.match(base_url):
        base_url = "https://" + base_url
    return base_url


def history_post_to_post(item: Dict[str, Any]) -> Optional[DiscoveredPost]:
    """Convert one History API post object, or None if it has no link."""
    link = (as_text(item.get("link")) or "").strip()
    if not link:
        return None

    is_full_text = item.get("is_full_text")
    return DiscoveredPost(
        title=(as_text(item.get("title")) or "").strip() or "Untitled",
        link=link,
        published=normalize_date(item.get("pubdate")),
        author=as_text(item.get("author")) or None,
        categories=as_tags(item.get("categories")),
        content=as_text(item.get("description")) or None,
        is_full_text=bool(is_full_text) if is_full_text is not None else None,
    )


def _reported_count(data: Dict[str, Any]) -> int:
    try:
        return max(int(data.get("count") or 0), 0)
    except (TypeError, ValueError):
        return 0


async def _get_json(client: httpx.AsyncClient, url: str, config: ServerConfig, **kwargs) -> Any:
    response = await fetch_with_retry(
        client,
        url,
        max_retries=config.max_retries,
        backoff_base=config.backoff_base,
        **kwargs,
    )
    if response is None:
        return None
    try:
        return response.json()
    except ValueError as e:
        logger.warning(f"{url} returned invalid JSON: {e}")
        return None


async def list_feeds(base_url: str, config: ServerConfig) -> List[Dict[str, Any]]:
    """List the feeds a History API instance has archived.

    Raises:
        SourceUnreachableError: If the listing cannot be fetched
    """
    url = f"{normalize_base_url(base_url)}/api/v1/feeds/"

    async with json_client(config) as client:
        data = await _get_json(client, url, config)

    if data is None:
        raise SourceUnreachableError(f"Could not list feeds at {url}")

    feeds = data.get("results", []) if isinstance(data, dict) else data
    return [
        {
            "id": str(feed.get("id")),
            "title": feed.get("title"),
            "description": feed.get("description"),
            "url": feed.get("url"),
            "count_of_posts": feed.get("count_of_posts"),
            "earliest_item_pubdate": feed.get("earliest_item_pubdate"),
            "latest_item_pubdate": feed.get("latest_item_pubdate"),
        }
        for feed in feeds
        if isinstance(feed, dict)
    ]


class HistoryApiImporter(BaseImporter):
    """Imports one feed from a History API instance.

    The server is authoritative, so posts are written page by page as they
    arrive, one transaction per page.

    Params:
        base_url: Root URL of the History API instance
        feed_id: Feed identifier on that instance
    """

    source = SourceKind.HISTORY_API

    async def run(self, params: Dict[str, Any]) -> ImportResult:
        base_url = normalize_base_url(params["base_url"])
        feed_id = str(params["feed_id"]).strip("/")

        self.emit("discovering", 0, 0, "Fetching feed info...")

        async with json_client(self.config) as client:
            feed_meta_url = f"{base_url}/api/v1/feeds/{feed_id}/"
            feed = await _get_json(client, feed_meta_url, self.config)
            if feed is None:
                raise SourceUnreachableError(f"Could not fetch feed {feed_id} from {base_url}")
            if not isinstance(feed, dict):
                raise InvalidFeedError(f"{feed_meta_url} did not return a feed object")

            title = (as_text(feed.get("title")) or "").strip() or "Unknown Blog"
            self.emit("discovering", 0, 0, f"Found feed '{title}'", discovered_title=title)

            blog, record_id = await self.open_blog(
                title,
                description=as_text(feed.get("description")),
                feed_url=as_text(feed.get("url")),
            )

            total = 0
            imported = 0
            try:
                total, imported = await self._walk_posts(client, base_url, feed_id, blog.id)
                return await self.finalize(blog.id, record_id, total, imported)
            except Exception as e:
                await self.abandon(record_id, total, imported, e)
                raise

    async def _walk_posts(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        feed_id: str,
        blog_id: str,
    ) -> Tuple[int, int]:
        """Follow the next pointer until the server's count is reached.

        The walk also stops on an empty page, a missing next pointer, or a
        next pointer that was already fetched. Returns (total, imported).
        """
        next_url: Optional[str] = f"{base_url}/api/v1/feeds/{feed_id}/posts/"
        params: Optional[Dict[str, Any]] = {"page": 1, "page_size": self.config.history_page_size}
        visited = set()
        page = 1
        total = 0
        delivered = 0
        imported = 0

        while next_url:
            if next_url in visited:
                logger.warning(f"Feed {feed_id} repeats page {next_url}, stopping")
                break
            visited.add(next_url)
            self.emit(f"fetching page {page}", total, imported, f"Fetching page {page}...")

            data = await _get_json(client, next_url, self.config, params=params)
            if not isinstance(data, dict):
                logger.warning(f"Stopping at page {page} of feed {feed_id}: no usable response")
                break

            results = [item for item in data.get("results") or [] if isinstance(item, dict)]
            reported = _reported_count(data)
            total = max(reported, total)
            if not results:
                break

            delivered += len(results)
            posts = [post for post in map(history_post_to_post, results) if post is not None]
            imported += await self.persist_batch(blog_id, posts)
            total = max(total, imported)
            self.emit(
                "persisting",
                total,
                imported,
                f"Imported {imported}/{total} articles.",
            )

            if reported and delivered >= reported:
                break

            # The next pointer already carries its own query string
            next_url = as_text(data.get("next"))
            params = None
            page += 1

        return total, imported
