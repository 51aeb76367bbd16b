"""Shared HTTP fetching for feed adapters.

Every request is bounded by a timeout and retried a small fixed number of
times with linear backoff; exhausting the budget raises ``AdapterError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..errors import AdapterError

logger = logging.getLogger(__name__)

USER_AGENT = "edm-popularity/0.1 (+https://github.com)"
REQUEST_TIMEOUT_SECONDS = 7.0
MAX_RETRIES = 2
BACKOFF_SECONDS = 0.25


def build_client(timeout: float = REQUEST_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=timeout),
        headers={"user-agent": USER_AGENT, "accept": "application/json"},
        follow_redirects=True,
    )


async def fetch_json_with_retry(
    client: httpx.AsyncClient,
    url: str,
    retries: int = MAX_RETRIES,
    backoff: float = BACKOFF_SECONDS,
) -> Any:
    """GET ``url`` and decode JSON, retrying on transport, status and decode errors.

    A timed-out attempt counts against ``retries`` like any other failure.
    """
    last_error: Exception | None = None

    for attempt in range(retries + 1):
        try:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            last_error = exc
            if attempt >= retries:
                break
            logger.warning("Fetch attempt %d/%d failed for %s: %s", attempt + 1, retries + 1, url, exc)
            await asyncio.sleep(backoff * (attempt + 1))

    raise AdapterError(f"failed to fetch {url} after {retries + 1} attempts: {last_error}") from last_error
