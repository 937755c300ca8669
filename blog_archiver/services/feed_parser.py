"""Feed parser service.

This module parses RSS/Atom feed bodies into DiscoveredPost records.
Fetching is left to the importers so the same parser serves live feeds,
paginated feed pages and archived snapshots.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import feedparser

from blog_archiver.models.schemas import DiscoveredPost
from blog_archiver.services.text_utils import normalize_date

# Root elements of the feed formats we accept
_FEED_ROOTS = {"rss", "feed", "rdf:rdf"}

# Declaration, processing instruction, comment or doctype (with optional internal subset)
_PROLOG_ITEM = re.compile(
    r"\s*(?:<\?.*?\?>|<!--.*?-->|<!doctype(?:[^\[>]|\[.*?\])*>)",
    re.IGNORECASE | re.DOTALL,
)
_ROOT_ELEMENT = re.compile(r"\s*<([A-Za-z_][\w.:-]*)")


@dataclass
class ParsedFeed:
    """Channel metadata plus the posts found in one feed document."""

    title: str
    description: Optional[str]
    site_url: Optional[str]
    posts: List[DiscoveredPost] = field(default_factory=list)


class FeedParseError(ValueError):
    """Raised when a body cannot be parsed as a feed."""


def looks_like_xml(body: str) -> bool:
    """Sniff the root element of a response body for an XML feed.

    The XML declaration, processing instructions, comments and the doctype
    are skipped. An HTML root is always rejected, so error pages and
    redirect interstitials never reach the parser. Without an XML
    declaration the root must be one of the feed formats.
    """
    text = body.lstrip("\ufeff")
    declared = text.lstrip().lower().startswith("<?xml")

    pos = 0
    prolog = _PROLOG_ITEM.match(text, pos)
    while prolog:
        pos = prolog.end()
        prolog = _PROLOG_ITEM.match(text, pos)

    root = _ROOT_ELEMENT.match(text, pos)
    if root is None:
        return False
    name = root.group(1).lower()
    if name == "html":
        return False
    return declared or name in _FEED_ROOTS


def parse_feed_text(body: str) -> ParsedFeed:
    """Parse an RSS/Atom document.

    Args:
        body: Raw feed text

    Returns:
        ParsedFeed with channel metadata and posts (posts without a link are dropped)

    Raises:
        FeedParseError: If the body is not a feed at all
    """
    feed = feedparser.parse(body)

    if feed.bozo and not feed.entries and not feed.feed.get("title"):
        raise FeedParseError(f"Feed parsing error: {feed.bozo_exception}")

    if not feed.version and not feed.entries:
        raise FeedParseError("Document is not an RSS or Atom feed")

    posts = []
    for entry in feed.entries:
        post = entry_to_post(entry)
        if post is not None:
            posts.append(post)

    return ParsedFeed(
        title=(feed.feed.get("title") or "").strip() or "Unknown Blog",
        description=feed.feed.get("subtitle") or feed.feed.get("description") or None,
        site_url=feed.feed.get("link") or None,
        posts=posts,
    )


def entry_to_post(entry: dict) -> Optional[DiscoveredPost]:
    """Convert a feedparser entry to a DiscoveredPost, or None without a link."""
    link = (entry.get("link") or "").strip()
    if not link:
        # Try alternate link
        for candidate in entry.get("links", []):
            if candidate.get("rel") == "alternate" or candidate.get("href"):
                link = candidate.get("href", "")
                break
    if not link:
        link = (entry.get("id") or "").strip()
    if not link:
        return None

    categories = [
        tag.get("term", "").strip()
        for tag in entry.get("tags", [])
        if tag.get("term", "").strip()
    ]

    published = _parse_date(entry)

    return DiscoveredPost(
        title=(entry.get("title") or "").strip() or "Untitled",
        link=link,
        published=normalize_date(published) if published else None,
        author=entry.get("author") or None,
        categories=categories,
        content=_extract_content(entry),
    )


def _extract_content(entry: dict) -> Optional[str]:
    """Prefer the longest full content block over the summary."""
    content_list = entry.get("content", [])
    if content_list:
        best = max(content_list, key=lambda c: len(c.get("value", "")))
        if best.get("value"):
            return best["value"]
    return entry.get("summary") or entry.get("description") or None


def _parse_date(entry: dict) -> Optional[datetime]:
    """Parse the publication date from a feed entry.

    Args:
        entry: Feed entry dict

    Returns:
        datetime if parsed successfully, None otherwise
    """
    # Try various date fields
    for field_name in ["published", "updated", "created"]:
        date_str = entry.get(field_name, "") or entry.get(f"{field_name}_parsed")

        if not date_str:
            continue

        # If it's already a time struct (from feedparser)
        if isinstance(date_str, tuple):
            try:
                return datetime(*date_str[:6], tzinfo=timezone.utc)
            except (ValueError, TypeError):
                continue

        normalized = normalize_date(date_str)
        if normalized:
            return datetime.fromisoformat(normalized)

        parsed = entry.get(f"{field_name}_parsed")
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (ValueError, TypeError):
                continue

    return None
