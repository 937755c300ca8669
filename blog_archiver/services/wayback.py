"""Wayback Machine snapshot index client."""

import logging
from typing import List

import httpx

from blog_archiver.services.fetching import fetch_with_retry

logger = logging.getLogger(__name__)

CDX_API_BASE = "https://web.archive.org/cdx/search/cdx"
WAYBACK_BASE = "https://web.archive.org/web"


def snapshot_url(feed_url: str, timestamp: str) -> str:
    """URL of the raw archived body (the id_ flag skips the Wayback toolbar)."""
    return f"{WAYBACK_BASE}/{timestamp}id_/{feed_url}"


async def fetch_snapshot_timestamps(
    client: httpx.AsyncClient,
    feed_url: str,
    *,
    max_retries: int = 3,
    backoff_base: float = 1.1,
) -> List[str]:
    """List capture timestamps for a feed URL.

    Only HTTP 200 captures are returned, collapsed on content digest so
    identical captures count once. Any failure yields an empty list.

    Args:
        client: HTTP client
        feed_url: Feed URL to look up

    Returns:
        Sorted, de-duplicated timestamps (YYYYMMDDhhmmss)
    """
    params = {
        "url": feed_url,
        "output": "json",
        "fl": "timestamp",
        "filter": "statuscode:200",
        "collapse": "digest",
    }

    response = await fetch_with_retry(
        client,
        CDX_API_BASE,
        params=params,
        max_retries=max_retries,
        backoff_base=backoff_base,
    )
    if response is None:
        return []

    try:
        data = response.json()
    except ValueError as e:
        logger.warning(f"Snapshot index returned invalid JSON for {feed_url}: {e}")
        return []

    # First row is the header
    if not isinstance(data, list) or len(data) < 2:
        return []

    timestamps = {
        str(row[0])
        for row in data[1:]
        if isinstance(row, list) and row and row[0]
    }
    return sorted(timestamps)


def downsample_timestamps(timestamps: List[str], cap: int) -> List[str]:
    """Thin a timestamp list to at most cap entries spread across its range.

    The oldest and newest entries are always kept. Selection is
    deterministic: evenly spaced indexes over the sorted list.
    """
    ordered = sorted(timestamps)
    n = len(ordered)
    if n <= cap:
        return ordered
    if cap <= 1:
        return ordered[-1:]

    step = (n - 1) / (cap - 1)
    indexes = sorted({round(i * step) for i in range(cap)})
    return [ordered[i] for i in indexes]
