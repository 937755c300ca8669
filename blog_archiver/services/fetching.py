"""HTTP helpers shared by the network importers."""

import logging
from asyncio import sleep as retry_sleep
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from blog_archiver.config import ServerConfig

logger = logging.getLogger(__name__)

FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/rdf+xml, "
    "application/xml;q=0.9, text/xml;q=0.9, */*;q=0.1"
)

TOO_MANY_REQUESTS = 429


def feed_client(config: ServerConfig) -> httpx.AsyncClient:
    """Build the client used for feed and archive requests."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=config.http_timeout,
        headers={"User-Agent": config.user_agent, "Accept": FEED_ACCEPT},
    )


def json_client(config: ServerConfig) -> httpx.AsyncClient:
    """Build the client used for JSON REST endpoints."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=config.http_timeout,
        headers={"User-Agent": config.user_agent, "Accept": "application/json"},
    )


def _rate_limited(response: httpx.Response) -> bool:
    return response.status_code == TOO_MANY_REQUESTS


def _log_retry(retry_state: RetryCallState) -> None:
    url = retry_state.args[0]
    outcome = retry_state.outcome
    if outcome.failed:
        logger.warning(f"Request to {url} failed: {outcome.exception()}")
    else:
        logger.info(f"Rate limited by {url} (attempt {retry_state.attempt_number})")
    logger.debug(f"Retrying {url} in {retry_state.next_action.sleep:.1f}s")


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    max_retries: int = 3,
    backoff_base: float = 1.1,
) -> Optional[httpx.Response]:
    """GET a URL, backing off exponentially on HTTP 429 and transport errors.

    Retry n (1-based) waits backoff_base * 2**n seconds. After max_retries
    retries the request is abandoned.

    Args:
        client: HTTP client
        url: URL to fetch
        params: Optional query parameters
        max_retries: Retries allowed after the first attempt
        backoff_base: Base delay in seconds

    Returns:
        The successful response, or None if the request failed or was abandoned
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(_rate_limited),
        wait=wait_exponential(multiplier=backoff_base * 2),
        stop=stop_after_attempt(max_retries + 1),
        sleep=retry_sleep,
        before_sleep=_log_retry,
        retry_error_callback=lambda retry_state: None,
    )
    response = await retrying(client.get, url, params=params)

    if response is None:
        logger.warning(f"Giving up on {url} after {max_retries} retries")
        return None

    if not 200 <= response.status_code < 300:
        logger.warning(f"{url} returned HTTP {response.status_code}")
        return None

    return response
