"""Apple Music marketing RSS chart adapter.

API: https://rss.marketingtools.apple.com
No authentication required. Each chart is requested at 100 entries and falls
back to 50 when the larger feed is unavailable.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..errors import AdapterError
from ..models import AdapterPayload, MetricKind, TrackMention
from ..scoring import rank_to_points
from .http import BACKOFF_SECONDS, build_client, fetch_json_with_retry

logger = logging.getLogger(__name__)

SOURCE_NAME = "apple_music_rss"
SOURCE_URL = "https://rss.marketingtools.apple.com"
API_BASE = "https://rss.marketingtools.apple.com/api/v2"

COUNTRIES = ["us", "gb", "ca", "au"]
CHARTS = ["most-played", "top-songs"]
CHART_LIMITS = [100, 50]


def build_endpoint(country: str, chart: str, limit: int) -> str:
    return f"{API_BASE}/{country}/music/{chart}/{limit}/songs.json"


async def fetch_chart(
    client: httpx.AsyncClient,
    country: str,
    chart: str,
    backoff: float = BACKOFF_SECONDS,
) -> tuple[str, int, list]:
    """Fetch one chart, trying each limit in ``CHART_LIMITS`` in turn.

    Returns ``(endpoint, limit, results)``.
    """
    errors = []
    for limit in CHART_LIMITS:
        endpoint = build_endpoint(country, chart, limit)
        try:
            payload = await fetch_json_with_retry(client, endpoint, backoff=backoff)
            results = (payload or {}).get("feed", {}).get("results") if isinstance(payload, dict) else None
            if not isinstance(results, list):
                raise AdapterError(f"unexpected payload shape for {endpoint}")
            return endpoint, limit, results
        except AdapterError as exc:
            errors.append(str(exc))

    raise AdapterError(f"failed chart {country}/{chart}: {'; '.join(errors)}")


def _mention_from_result(item: dict, rank: int, context: dict) -> Optional[TrackMention]:
    title = str(item.get("name") or "").strip()
    artist = str(item.get("artistName") or "").strip()
    if not title or not artist:
        return None
    limit = context["chart_limit"]
    return TrackMention(
        external_id=str(item["id"]) if item.get("id") is not None else None,
        title=title,
        artist=artist,
        signals={
            MetricKind.CHART_RANK.value: rank,
            MetricKind.CHART_POINTS.value: rank_to_points(rank, limit),
        },
        signal_context={**context, "max_rank": limit},
    )


async def fetch_apple_music_rss(
    client: Optional[httpx.AsyncClient] = None,
    backoff: float = BACKOFF_SECONDS,
) -> AdapterPayload:
    """Fetch every configured country/chart pair into one payload."""
    owns_client = client is None
    client = client or build_client()
    tracks: list[TrackMention] = []

    try:
        for country in COUNTRIES:
            for chart in CHARTS:
                endpoint, limit, results = await fetch_chart(client, country, chart, backoff=backoff)
                context = {"country": country, "chart": chart, "endpoint": endpoint, "chart_limit": limit}
                for index, item in enumerate(results):
                    if not isinstance(item, dict):
                        continue
                    mention = _mention_from_result(item, index + 1, context)
                    if mention is not None:
                        tracks.append(mention)
                logger.info("Fetched %s/%s: %d entries (limit %d)", country, chart, len(results), limit)
    finally:
        if owns_client:
            await client.aclose()

    return AdapterPayload(source_name=SOURCE_NAME, source_url=SOURCE_URL, tracks=tracks)
