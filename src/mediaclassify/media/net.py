"""HTTP transport used for media and model downloads.

Connection-level retries are delegated to httpx's transport; retryable
status codes are retried here. This is the only retry policy in the system.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from mediaclassify.errors import FetchFailedError

if TYPE_CHECKING:
    from mediaclassify.config import Settings

logger = logging.getLogger(__name__)

USER_AGENT = "mediaclassify/0.1"
RETRY_STATUS_CODES: frozenset[int] = frozenset({408, 413, 429, 500, 502, 503, 504})
RETRY_BACKOFF_SECONDS: float = 0.25


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Build the shared async HTTP client with a fixed request timeout."""
    return httpx.AsyncClient(
        timeout=settings.http_timeout,
        transport=httpx.AsyncHTTPTransport(retries=settings.http_retries),
        headers={"user-agent": USER_AGENT},
        follow_redirects=True,
    )


async def fetch_bytes(client: httpx.AsyncClient, url: str, *, retries: int = 2) -> bytes:
    """GET a URL and return the body.

    Raises:
        FetchFailedError: On transport errors or a non-success status once
            retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise FetchFailedError(f"Failed to download {url}: {exc}", input_ref=url) from exc

        if response.status_code in RETRY_STATUS_CODES and attempt < retries:
            attempt += 1
            logger.debug("Retrying %s after status %s (attempt %s)", url, response.status_code, attempt)
            await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
            continue

        if response.is_error:
            raise FetchFailedError(
                f"Failed to download {url}. Status: {response.status_code}",
                input_ref=url,
            )
        return response.content
