"""Live feed pagination detection.

Most blog platforms only serve the latest N posts in their feed, but several
accept a query parameter that walks further back. The scheme is detected
from the feed URL first and, failing that, from platform markers in the
feed body.
"""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


@dataclass(frozen=True)
class PaginationScheme:
    """How to request page N (1-based) of a feed."""

    platform: str
    param: str
    # Offset schemes address items, not pages
    offset_based: bool = False
    page_size: int = 25

    def page_url(self, feed_url: str, page: int) -> str:
        value = 1 + (page - 1) * self.page_size if self.offset_based else page
        params = {self.param: str(value)}
        if self.offset_based:
            params["max-results"] = str(self.page_size)
        return _with_query(feed_url, params)


WORDPRESS = PaginationScheme(platform="wordpress", param="paged")
BLOGGER = PaginationScheme(platform="blogger", param="start-index", offset_based=True)
GENERIC = PaginationScheme(platform="generic", param="page")

_URL_PATTERNS = [
    (re.compile(r"/feeds/posts/(default|summary)", re.IGNORECASE), BLOGGER),
    (re.compile(r"[?&]feed=(rss2?|atom)", re.IGNORECASE), WORDPRESS),
    (re.compile(r"/(comments/)?feed/?(rss2?/?|atom/?)?$", re.IGNORECASE), WORDPRESS),
    (re.compile(r"[?&]paged=\d+", re.IGNORECASE), WORDPRESS),
    (re.compile(r"[?&]page=\d+", re.IGNORECASE), GENERIC),
]

_BODY_FINGERPRINTS = [
    (re.compile(r"<generator[^>]*>\s*https?://wordpress\.(org|com)", re.IGNORECASE), WORDPRESS),
    (re.compile(r"wordpress\.(org|com)/\?v=", re.IGNORECASE), WORDPRESS),
    (re.compile(r"<generator[^>]*blogger\.com", re.IGNORECASE), BLOGGER),
    (re.compile(r"tag:blogger\.com,1999:blog-", re.IGNORECASE), BLOGGER),
]


def detect_pagination(
    feed_url: str,
    body: str,
    entries_per_page: int = 0,
) -> Optional[PaginationScheme]:
    """Detect whether a live feed can be paginated.

    Args:
        feed_url: URL the feed was fetched from
        body: Raw text of the first page
        entries_per_page: Entries on the first page, used as the offset step

    Returns:
        The platform's pagination scheme, or None if the feed does not paginate
    """
    path_and_query = urlsplit(feed_url)
    target = path_and_query.path + ("?" + path_and_query.query if path_and_query.query else "")

    scheme = None
    for pattern, candidate in _URL_PATTERNS:
        if pattern.search(target):
            scheme = candidate
            break

    if scheme is None:
        head = body[:4096]
        for pattern, candidate in _BODY_FINGERPRINTS:
            if pattern.search(head):
                scheme = candidate
                break

    if scheme is not None and scheme.offset_based and entries_per_page > 0:
        scheme = PaginationScheme(
            platform=scheme.platform,
            param=scheme.param,
            offset_based=True,
            page_size=entries_per_page,
        )
    return scheme


def _with_query(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urlunsplit(parts._replace(query=urlencode(query)))
