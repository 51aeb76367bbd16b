"""Ingestion pipeline and score computation.

One pipeline run fetches every selected adapter in turn, ingests each payload
inside its own transaction, then recomputes every track's score from the full
observation history in a separate transaction. A run summary is written to
``last_update.json`` next to the database.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from .core.adapters import Adapter, select_adapters
from .core.errors import ResolutionError
from .core.identity import make_track_key
from .core.models import AdapterPayload, MetricKind, RunSummary, SourceRun
from .core.scoring import SCORE_METHOD, calculate_score
from .db import get_db_path, get_session_factory, get_summary_path, init_db
from .observations import append_observation, finite_value, observation_context, upsert_source
from .resolver import resolve_track
from .sqlmodels import Observation, Score, Source, Track, utcnow

logger = logging.getLogger(__name__)

COUNTED_TABLES = {
    "tracks": Track,
    "sources": Source,
    "observations": Observation,
    "scores": Score,
}

SCORE_UPSERT_CHUNK = 500


async def table_counts() -> dict[str, int]:
    session_factory = get_session_factory()
    counts = {}
    async with session_factory() as session:
        for name, model in COUNTED_TABLES.items():
            counts[name] = await session.scalar(select(func.count()).select_from(model)) or 0
    return counts


async def ingest_payload(payload: AdapterPayload, adapter_name: str, observed_at: datetime) -> SourceRun:
    """Ingest one adapter payload atomically.

    Mentions without a title or artist are skipped. A resolution or
    persistence error rolls back every write for this source.
    """
    source_name = payload.source_name or adapter_name
    processed = 0
    inserted = 0
    session_factory = get_session_factory()

    try:
        async with session_factory() as session:
            async with session.begin():
                source_id = await upsert_source(session, source_name, payload.source_url)

                for mention in payload.tracks:
                    if not mention.is_complete:
                        continue
                    track_id = await resolve_track(session, mention)
                    if track_id is None:
                        continue
                    processed += 1

                    context = observation_context(source_name, mention.signal_context)
                    for metric, value in mention.signals.items():
                        if append_observation(
                            session,
                            track_id=track_id,
                            source_id=source_id,
                            observed_at=observed_at,
                            metric=metric,
                            value=value,
                            context=context,
                        ):
                            inserted += 1
    except (ResolutionError, SQLAlchemyError) as exc:
        logger.error("Ingestion of %s rolled back: %s", source_name, exc)
        return SourceRun(source=source_name, status="error", error=str(exc))

    logger.info(
        "Ingested %s: %d/%d tracks, %d observations",
        source_name, processed, payload.tracks_seen, inserted,
    )
    return SourceRun(
        source=source_name,
        status="ok",
        tracks_seen=payload.tracks_seen,
        tracks_processed=processed,
        observations_inserted=inserted,
    )


async def recompute_scores(computed_at: Optional[datetime] = None) -> int:
    """Recompute and overwrite the score of every track with observations.

    Each metric is averaged over the track's whole history. The chart size
    used to turn ranks into points comes from the ``max_rank`` or
    ``chart_limit`` context of the rank observations, defaulting to 100.
    Returns the number of scores written.
    """
    computed_at = computed_at or utcnow()
    session_factory = get_session_factory()

    async with session_factory() as session:
        async with session.begin():
            avg_rows = await session.execute(
                select(
                    Observation.track_id,
                    Observation.metric,
                    func.avg(Observation.value).label("avg_value"),
                ).group_by(Observation.track_id, Observation.metric)
            )
            metrics_by_track: dict[int, dict[str, float]] = {}
            for row in avg_rows:
                metrics_by_track.setdefault(row.track_id, {})[row.metric] = float(row.avg_value)

            chart_size = func.coalesce(
                func.json_extract(Observation.context, "$.max_rank"),
                func.json_extract(Observation.context, "$.chart_limit"),
            )
            rank_rows = await session.execute(
                select(Observation.track_id, func.max(chart_size).label("max_rank"))
                .where(Observation.metric == MetricKind.CHART_RANK.value)
                .where(func.json_valid(Observation.context))
                .group_by(Observation.track_id)
            )
            max_rank_by_track = {
                row.track_id: finite_value(row.max_rank)
                for row in rank_rows
                if row.max_rank is not None
            }

            rows = [
                {
                    "track_id": track_id,
                    "score": calculate_score(metrics, max_rank_by_track.get(track_id)),
                    "computed_at": computed_at,
                    "method": SCORE_METHOD,
                }
                for track_id, metrics in metrics_by_track.items()
            ]

            for start in range(0, len(rows), SCORE_UPSERT_CHUNK):
                stmt = sqlite_insert(Score).values(rows[start:start + SCORE_UPSERT_CHUNK])
                await session.execute(stmt.on_conflict_do_update(
                    index_elements=[Score.track_id],
                    set_={
                        "score": stmt.excluded.score,
                        "computed_at": stmt.excluded.computed_at,
                        "method": stmt.excluded.method,
                    },
                ))

    logger.info("Scored %d tracks (%s)", len(rows), SCORE_METHOD)
    return len(rows)


async def run_pipeline(
    adapters: Optional[Mapping[str, Adapter]] = None,
    write_summary: bool = True,
) -> RunSummary:
    """Fetch, ingest and score; one failing adapter never stops the others."""
    await init_db()
    adapters = dict(adapters) if adapters is not None else select_adapters()
    run_started = utcnow()
    before = await table_counts()
    source_runs: list[SourceRun] = []

    for name, adapter in adapters.items():
        try:
            raw = await adapter()
            payload = raw if isinstance(raw, AdapterPayload) else AdapterPayload.model_validate(raw)
        except ValidationError as exc:
            logger.error("Adapter %s returned an unexpected payload shape: %s", name, exc)
            source_runs.append(SourceRun(source=name, status="error", error=f"unexpected payload shape: {exc}"))
            continue
        except Exception as exc:
            logger.error("Adapter %s failed: %s", name, exc, exc_info=True)
            source_runs.append(SourceRun(source=name, status="error", error=str(exc)))
            continue

        source_runs.append(await ingest_payload(payload, name, run_started))

    scored = await recompute_scores(run_started)
    after = await table_counts()

    summary = RunSummary(
        updated_at=run_started,
        database_path=str(get_db_path()),
        delta={name: after[name] - before[name] for name in COUNTED_TABLES},
        counts=after,
        source_runs=source_runs,
        adapters_used=list(adapters),
        scores_computed=scored,
    )
    if write_summary:
        write_run_summary(summary)

    failed = [r.source for r in source_runs if r.status == "error"]
    logger.info(
        "Pipeline run complete: %d adapters, %d failed%s, delta %s",
        len(adapters), len(failed), f" ({', '.join(failed)})" if failed else "", summary.delta,
    )
    return summary


def write_run_summary(summary: RunSummary) -> None:
    path = get_summary_path()
    path.write_text(summary.model_dump_json(indent=2, exclude_none=True) + "\n", encoding="utf-8")


def read_run_summary() -> Optional[dict]:
    """Return the last persisted run summary, or None if no run has completed."""
    path = get_summary_path()
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        logger.warning("Run summary at %s is not valid JSON: %s", path, exc)
        return None


async def get_top_tracks(limit: int = 20) -> list[dict]:
    """Highest scored tracks, best first."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        result = await session.execute(
            select(Track, Score)
            .join(Score, Score.track_id == Track.id)
            .order_by(Score.score.desc(), Track.title.asc())
            .limit(limit)
        )
        rows = result.all()

    return [
        {
            "track_id": track.id,
            "external_id": track.external_id,
            "title": track.title,
            "artist": track.artist,
            "score": score.score,
            "method": score.method,
            "computed_at": score.computed_at.isoformat(),
        }
        for track, score in rows
    ]


async def get_track_history(
    external_id: Optional[str] = None,
    title: Optional[str] = None,
    artist: Optional[str] = None,
    limit: int = 200,
) -> Optional[dict]:
    """Observation history for one track, newest first.

    The track is found by external id, or by title and artist.
    Returns None when no track matches.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        track = None
        if external_id:
            result = await session.execute(select(Track).where(Track.external_id == external_id))
            track = result.scalar_one_or_none()
        if track is None and title and artist:
            result = await session.execute(
                select(Track).where(Track.normalized_key == make_track_key(title, artist))
            )
            track = result.scalar_one_or_none()
        if track is None:
            return None

        score = await session.get(Score, track.id)
        obs_result = await session.execute(
            select(Observation, Source.name)
            .join(Source, Source.id == Observation.source_id)
            .where(Observation.track_id == track.id)
            .order_by(Observation.observed_at.desc(), Observation.id.desc())
            .limit(limit)
        )
        observations = obs_result.all()

    return {
        "track_id": track.id,
        "external_id": track.external_id,
        "title": track.title,
        "artist": track.artist,
        "normalized_key": track.normalized_key,
        "score": score.score if score else None,
        "observations": [
            {
                "source": source_name,
                "metric": obs.metric,
                "value": obs.value,
                "observed_at": obs.observed_at.isoformat(),
                "context": json.loads(obs.context) if obs.context else None,
            }
            for obs, source_name in observations
        ],
    }
