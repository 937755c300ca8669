"""Live feed + Wayback Machine importer.

Collects as much of a blog's history as can be recovered from its feed:
the live feed, any further pages the platform exposes, and the feed as it
was archived at evenly spread points in time.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Tuple

import httpx

from blog_archiver.errors import EmptyFeedError, InvalidFeedError, SourceUnreachableError
from blog_archiver.models.schemas import DiscoveredPost, ImportResult, SourceKind
from blog_archiver.services.feed_parser import (
    FeedParseError,
    ParsedFeed,
    looks_like_xml,
    parse_feed_text,
)
from blog_archiver.services.fetching import feed_client, fetch_with_retry
from blog_archiver.services.importers.base import BaseImporter
from blog_archiver.services.pagination import PaginationScheme, detect_pagination
from blog_archiver.services.wayback import (
    downsample_timestamps,
    fetch_snapshot_timestamps,
    snapshot_url,
)

logger = logging.getLogger(__name__)

_HAS_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

# Consecutive pages without a new post before pagination stops
MAX_EMPTY_PAGES = 2


def normalize_feed_url(url: str) -> str:
    """Ensure the URL carries a scheme, defaulting to https."""
    url = url.strip()
    if not _HAS_SCHEME.match(url):
        url = "https://" + url.lstrip("/")
    return url


class WaybackImporter(BaseImporter):
    """Imports a blog from its RSS/Atom feed and the feed's archived snapshots.

    Params:
        feed_url: Feed URL; a missing scheme defaults to https
    """

    source = SourceKind.WAYBACK

    async def run(self, params: Dict[str, Any]) -> ImportResult:
        feed_url = normalize_feed_url(params["feed_url"])
        self.emit("discovering", 0, 0, f"Fetching {feed_url}")

        async with feed_client(self.config) as client:
            feed, body = await self._fetch_live_feed(client, feed_url)
            self.emit(
                "discovering",
                len(feed.posts),
                0,
                f"Found {len(feed.posts)} posts in live feed",
                discovered_title=feed.title,
            )

            # Insertion order is discovery order; live entries are added first and win
            posts: Dict[str, DiscoveredPost] = {}
            self._merge(posts, feed.posts)

            scheme = detect_pagination(feed_url, body, len(feed.posts))
            if scheme is not None:
                logger.info(f"{feed_url} paginates as {scheme.platform} ({scheme.param})")
                await self._crawl_pages(client, feed_url, scheme, posts)

            await self._crawl_snapshots(client, feed_url, posts)

        logger.info(f"Discovered {len(posts)} unique posts for {feed_url}")
        return await self.store(
            list(posts.values()),
            title=feed.title,
            description=feed.description,
            feed_url=feed_url,
            site_url=feed.site_url,
        )

    async def _fetch_live_feed(
        self, client: httpx.AsyncClient, feed_url: str
    ) -> Tuple[ParsedFeed, str]:
        """Fetch and validate the first page of the live feed.

        Raises:
            SourceUnreachableError: If the feed cannot be fetched
            InvalidFeedError: If the response is not a feed
            EmptyFeedError: If the feed has no posts
        """
        response = await fetch_with_retry(
            client,
            feed_url,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
        )
        if response is None:
            raise SourceUnreachableError(f"Could not reach feed at {feed_url}")

        body = response.text
        if not looks_like_xml(body):
            raise InvalidFeedError(
                f"{feed_url} is not a valid feed: the server returned HTML or another non-XML document"
            )

        try:
            feed = parse_feed_text(body)
        except FeedParseError as e:
            raise InvalidFeedError(f"{feed_url} is not a valid feed: {e}") from e

        if not feed.posts:
            raise EmptyFeedError(f"The feed at {feed_url} contains no posts")

        return feed, body

    async def _crawl_pages(
        self,
        client: httpx.AsyncClient,
        feed_url: str,
        scheme: PaginationScheme,
        posts: Dict[str, DiscoveredPost],
    ) -> None:
        empty_pages = 0
        for page in range(2, self.config.feed_page_cap + 1):
            await asyncio.sleep(self.config.feed_page_delay)

            page_posts = await self._fetch_feed_posts(client, scheme.page_url(feed_url, page))
            added = self._merge(posts, page_posts)
            self.emit(
                f"fetching page {page}",
                len(posts),
                0,
                f"Page {page}: {added} new posts ({len(posts)} total)",
            )

            empty_pages = 0 if added else empty_pages + 1
            if empty_pages >= MAX_EMPTY_PAGES:
                logger.debug(f"Stopping pagination of {feed_url} at page {page}")
                break

    async def _crawl_snapshots(
        self,
        client: httpx.AsyncClient,
        feed_url: str,
        posts: Dict[str, DiscoveredPost],
    ) -> None:
        self.emit("snapshots", len(posts), 0, "Querying the Wayback Machine")

        timestamps = await fetch_snapshot_timestamps(
            client,
            feed_url,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
        )
        selected = downsample_timestamps(timestamps, self.config.snapshot_cap)
        if not selected:
            logger.info(f"No archived snapshots for {feed_url}")
            return

        logger.info(f"Fetching {len(selected)} of {len(timestamps)} snapshots for {feed_url}")
        for index, timestamp in enumerate(selected, start=1):
            await asyncio.sleep(self.config.snapshot_delay)

            added = self._merge(
                posts,
                await self._fetch_feed_posts(client, snapshot_url(feed_url, timestamp)),
            )
            self.emit(
                "snapshots",
                len(posts),
                0,
                f"Snapshot {index}/{len(selected)} ({timestamp}): {added} new posts",
            )

    async def _fetch_feed_posts(self, client: httpx.AsyncClient, url: str) -> List[DiscoveredPost]:
        """Fetch one feed document. Any failure yields no posts."""
        response = await fetch_with_retry(
            client,
            url,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
        )
        if response is None:
            return []

        body = response.text
        if not looks_like_xml(body):
            logger.warning(f"Skipping {url}: not an XML feed")
            return []

        try:
            return parse_feed_text(body).posts
        except FeedParseError as e:
            logger.warning(f"Skipping {url}: {e}")
            return []

    @staticmethod
    def _merge(posts: Dict[str, DiscoveredPost], found: List[DiscoveredPost]) -> int:
        added = 0
        for post in found:
            if post.link and post.link not in posts:
                posts[post.link] = post
                added += 1
        return added
