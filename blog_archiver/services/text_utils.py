"""Text helpers shared by every importer."""

import asyncio
import math
import re
import uuid
import warnings
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

# Average adult silent reading speed
WORDS_PER_MINUTE = 238

# Extracted text longer than this is treated as the full article rather than an excerpt
FULL_TEXT_THRESHOLD = 200

_WHITESPACE = re.compile(r"\s+")


def generate_id() -> str:
    """Return a new opaque identifier."""
    return uuid.uuid4().hex


def strip_html(html: str) -> str:
    """Reduce an HTML fragment to whitespace-normalized plain text.

    Script and style bodies are dropped; entities are decoded.
    """
    if not html:
        return ""

    if "<" not in html and "&" not in html:
        return _WHITESPACE.sub(" ", html).strip()

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(html, "lxml")

    for tag in soup(["script", "style"]):
        tag.decompose()

    text = soup.get_text(" ")
    return _WHITESPACE.sub(" ", text).strip()


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def reading_time_minutes(word_count: int) -> int:
    return math.ceil(word_count / WORDS_PER_MINUTE)


def is_full_text(text: Optional[str]) -> bool:
    return bool(text) and len(text) > FULL_TEXT_THRESHOLD


def normalize_date(value) -> Optional[str]:
    """Normalize a date to an ISO 8601 UTC string.

    Accepts datetimes, RFC 2822 strings (RSS) and ISO strings. Naive values
    are assumed to be UTC. Returns None for anything unparseable so dates
    stay comparable as strings in storage.
    """
    if not value:
        return None

    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        dt = None
        try:
            dt = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            pass
        if dt is None:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def cooperative_yield() -> None:
    """Let other tasks on the event loop run."""
    await asyncio.sleep(0)


def as_text(value: Any) -> Optional[str]:
    """Coerce a loosely typed JSON scalar to text.

    None and containers give None; numbers and booleans are stringified.
    """
    if value is None or isinstance(value, (dict, list, tuple)):
        return None
    return value if isinstance(value, str) else str(value)


def as_tags(value: Any) -> List[str]:
    """Coerce a JSON categories value to a list of non-empty tag strings."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [tag for tag in (as_text(item) for item in value) if tag and tag.strip()]
