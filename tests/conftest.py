"""Shared fixtures for blog_archiver tests."""

import asyncio
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import pytest

from blog_archiver.config import ServerConfig
from blog_archiver.storage.database import init_database


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db():
    """Create an in-memory database for testing."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_database(conn)
    yield conn
    await conn.close()


@pytest.fixture
def config(tmp_path):
    """Configuration with every delay switched off."""
    return ServerConfig(
        db_path=tmp_path / "test.db",
        feed_page_delay=0,
        snapshot_delay=0,
        backoff_base=0,
        completed_job_ttl=60,
    )


def make_response(status_code: int = 200, text: str = "", json_data=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if json_data is not None:
        response.json.return_value = json_data
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response


def rss(title: str, items: List[Tuple[str, str]], extra: str = "") -> str:
    """Build an RSS 2.0 document from (title, link) pairs."""
    entries = "".join(
        f"<item><title>{item_title}</title><link>{link}</link>"
        f"<pubDate>Mon, 0{i % 9 + 1} Jan 2024 10:00:00 GMT</pubDate>"
        f"<description>Body of {item_title}</description></item>"
        for i, (item_title, link) in enumerate(items)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<rss version="2.0"><channel><title>{title}</title>'
        f"<link>https://example.com</link><description>About {title}</description>"
        f"{extra}{entries}</channel></rss>"
    )


class FakeHttp:
    """Scripted stand-in for httpx.AsyncClient.get.

    Each URL maps to a list of responses served in order; the last one
    repeats. Exceptions in the list are raised. Unknown URLs get a 404.
    """

    def __init__(self):
        self.routes: Dict[str, list] = {}
        self.requests: List[Tuple[str, Optional[dict]]] = []
        self.gate: Optional[asyncio.Event] = None

    def add(self, url: str, *responses) -> None:
        self.routes[url] = list(responses)

    def urls(self) -> List[str]:
        return [url for url, _ in self.requests]

    async def get(self, url, params=None, **kwargs):
        self.requests.append((url, params))
        if self.gate is not None:
            await self.gate.wait()

        queue = self.routes.get(url)
        if not queue:
            return make_response(404, "Not Found")

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def http():
    """Patch the HTTP client and the retry sleep used by every importer."""
    fake = FakeHttp()
    with patch("blog_archiver.services.fetching.httpx.AsyncClient") as mock_client, \
         patch("blog_archiver.services.fetching.retry_sleep", new_callable=AsyncMock) as mock_sleep:
        mock_instance = AsyncMock()
        mock_instance.get = fake.get
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance

        fake.sleep = mock_sleep
        yield fake
