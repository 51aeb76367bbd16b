"""EDM Popularity MCP Server.

FastMCP server exposing track score lookups and the popularity catalogue.
The ingestion pipeline runs in the background on a schedule.
Run: edm-popularity-mcp
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations

from .core.models import LookupRequest
from .db import close_db, init_db
from .ingestors import get_top_tracks, get_track_history, read_run_summary
from .lookup import ScoreLookupService
from .scheduler import PipelineScheduler

logger = logging.getLogger(__name__)

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=False)

lookup_service = ScoreLookupService()
scheduler = PipelineScheduler(on_complete=lookup_service.invalidate)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Initialize the database and start the pipeline scheduler."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    await init_db()
    await scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await lookup_service.aclose()
        await close_db()


mcp = FastMCP(
    "EDM Popularity",
    instructions="Look up 0-100 popularity scores for music tracks, merged from Apple Music charts and other feeds.",
    lifespan=lifespan,
)


# ─── Tool 1: Score Lookup ─────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def edm_score_lookup(
    external_id: str = "",
    title: str = "",
    artist: str = "",
    normalized_key: str = "",
) -> dict:
    """Popularity score for one track, by storefront id or by title and artist.

    Args:
        external_id: Storefront track id (e.g. an Apple Music song id). Checked first.
        title: Track title, used with artist when the id is unknown.
        artist: Track artist.
        normalized_key: Precomputed 'title::artist' key, an alternative to title/artist.
    """
    request = LookupRequest(
        external_id=external_id,
        title=title,
        artist=artist,
        normalized_key=normalized_key,
    )
    result = await lookup_service.lookup(request)
    return result.model_dump(mode="json")


# ─── Tool 2: Top Tracks ──────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def edm_top_tracks(limit: int = 20) -> dict:
    """Highest scoring tracks in the catalogue.

    Args:
        limit: Maximum number of tracks. Default 20.
    """
    tracks = await get_top_tracks(limit=max(1, min(limit, 200)))
    return {
        "title": "Top Tracks",
        "tracks": tracks,
        "count": len(tracks),
        "summary": ", ".join(f"{t['title']} by {t['artist']} ({t['score']})" for t in tracks[:5])
        or "No scored tracks yet; the first pipeline run may still be in progress.",
    }


# ─── Tool 3: Track History ───────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def edm_track_history(external_id: str = "", title: str = "", artist: str = "", limit: int = 200) -> dict:
    """Every observation recorded for one track, newest first.

    Args:
        external_id: Storefront track id. Checked first.
        title: Track title, used with artist when the id is unknown.
        artist: Track artist.
        limit: Maximum number of observations. Default 200.
    """
    history = await get_track_history(
        external_id=external_id or None,
        title=title or None,
        artist=artist or None,
        limit=max(1, min(limit, 1000)),
    )
    if history is None:
        return {"title": "Track History", "found": False, "summary": "No matching track."}
    return {
        "title": "Track History",
        "found": True,
        **history,
        "summary": f"{history['title']} by {history['artist']}: {len(history['observations'])} observations, score {history['score']}.",
    }


# ─── Tool 4: Last Run ────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def edm_last_run() -> dict:
    """Summary of the most recent ingestion pipeline run."""
    summary = read_run_summary()
    if summary is None:
        return {"title": "Last Pipeline Run", "found": False, "summary": "No pipeline run has completed yet."}
    failed = [r["source"] for r in summary.get("source_runs", []) if r.get("status") == "error"]
    return {
        "title": "Last Pipeline Run",
        "found": True,
        "run": summary,
        "summary": f"Run at {summary.get('updated_at')}: {len(summary.get('adapters_used', []))} adapters, "
        + (f"failed: {', '.join(failed)}." if failed else "all succeeded."),
    }


def main():
    """Entry point for the CLI command."""
    mcp.run()


if __name__ == "__main__":
    main()
