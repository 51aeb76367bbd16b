"""Tests for the read-only score lookup service."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from edm_popularity.core.models import LookupReason, LookupRequest, LookupResult
from edm_popularity.db import DB_FILENAME
from edm_popularity.lookup import LookupCache, ScoreLookupService, build_query
from edm_popularity.sqlmodels import Score, Track, utcnow


async def _seed(session_factory, *, external_id, title, artist, key, score=None) -> int:
    async with session_factory() as session:
        async with session.begin():
            track = Track(external_id=external_id, title=title, artist=artist, normalized_key=key)
            session.add(track)
            await session.flush()
            if score is not None:
                session.add(Score(track_id=track.id, score=score, computed_at=utcnow(), method="smoke_test"))
            return track.id


@pytest_asyncio.fixture
async def service(session_factory, data_dir: Path):
    await _seed(
        session_factory,
        external_id="12345",
        title="Track One",
        artist="Artist One",
        key="track one::artist one",
        score=88,
    )
    svc = ScoreLookupService(db_path=data_dir / DB_FILENAME)
    try:
        yield svc
    finally:
        await svc.aclose()


def _as_dict(result: LookupResult) -> dict:
    return result.model_dump(mode="json")


@pytest.mark.asyncio
async def test_lookup_by_external_id(service) -> None:
    assert _as_dict(await service.lookup({"external_id": "12345"})) == {"score": 88, "reason": "external_id"}


@pytest.mark.asyncio
async def test_lookup_by_title_and_artist(service) -> None:
    result = await service.lookup({"title": "Track One", "artist": "Artist One"})
    assert _as_dict(result) == {"score": 88, "reason": "title_artist"}


@pytest.mark.asyncio
async def test_lookup_not_found(service) -> None:
    result = await service.lookup({"title": "Unknown", "artist": "Unknown"})
    assert _as_dict(result) == {"score": None, "reason": "not_found"}


@pytest.mark.asyncio
async def test_lookup_malformed_key_is_insufficient(service) -> None:
    result = await service.lookup({"normalized_key": "invalid"})
    assert _as_dict(result) == {"score": None, "reason": "insufficient_metadata"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_body",
    [{}, None, {"title": "Track One"}, {"artist": "Artist One"}, {"external_id": "   "}, {"title": ["not", "text"]}],
)
async def test_lookup_without_usable_metadata(service, request_body) -> None:
    result = await service.lookup(request_body)
    assert result.reason is LookupReason.INSUFFICIENT_METADATA
    assert result.score is None


@pytest.mark.asyncio
async def test_unknown_external_id_falls_back_to_key(service) -> None:
    result = await service.lookup(LookupRequest(external_id="99999", title="TRACK  one", artist="artist one"))
    assert _as_dict(result) == {"score": 88, "reason": "title_artist"}


@pytest.mark.asyncio
async def test_explicit_normalized_key(service) -> None:
    result = await service.lookup({"normalized_key": "Track One::Artist One"})
    assert _as_dict(result) == {"score": 88, "reason": "title_artist"}


@pytest.mark.asyncio
async def test_numeric_external_id_is_accepted(service) -> None:
    result = await service.lookup({"apple_song_id": 12345})
    assert result.reason is LookupReason.EXTERNAL_ID


@pytest.mark.asyncio
async def test_unscored_track_is_not_found(service, session_factory) -> None:
    await _seed(session_factory, external_id="777", title="Fresh", artist="New", key="fresh::new")
    result = await service.lookup({"external_id": "777"})
    assert result.reason is LookupReason.NOT_FOUND


@pytest.mark.asyncio
async def test_missing_database(tmp_path: Path) -> None:
    db_path = tmp_path / "nowhere" / DB_FILENAME
    svc = ScoreLookupService(db_path=db_path)

    result = await svc.lookup({"external_id": "12345"})

    assert _as_dict(result) == {"score": None, "reason": "db_missing"}
    assert not db_path.exists()
    await svc.aclose()


@pytest.mark.asyncio
async def test_database_without_tables(tmp_path: Path) -> None:
    db_path = tmp_path / DB_FILENAME
    db_path.touch()
    svc = ScoreLookupService(db_path=db_path)
    try:
        result = await svc.lookup({"title": "Track One", "artist": "Artist One"})
    finally:
        await svc.aclose()
    assert result.reason is LookupReason.DB_MISSING


@pytest.mark.asyncio
async def test_results_are_cached_until_invalidated(service, session_factory) -> None:
    assert (await service.lookup({"external_id": "42"})).reason is LookupReason.NOT_FOUND

    await _seed(session_factory, external_id="42", title="Answer", artist="Deep Thought", key="answer::deep thought", score=42)
    assert (await service.lookup({"external_id": "42"})).reason is LookupReason.NOT_FOUND

    service.invalidate()
    assert _as_dict(await service.lookup({"external_id": "42"})) == {"score": 42, "reason": "external_id"}


@pytest.mark.asyncio
async def test_concurrent_identical_lookups_share_one_query(service, monkeypatch) -> None:
    calls = 0
    release = asyncio.Event()

    async def slow_query(query):
        nonlocal calls
        calls += 1
        await release.wait()
        return LookupResult(score=88, reason=LookupReason.EXTERNAL_ID)

    monkeypatch.setattr(service, "_query", slow_query)

    tasks = [asyncio.create_task(service.lookup({"external_id": "12345"})) for _ in range(5)]
    await asyncio.sleep(0)
    assert service.inflight_count == 1
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(r.score == 88 for r in results)
    assert service.inflight_count == 0


@pytest.mark.asyncio
async def test_unexpected_failure_never_raises(service, monkeypatch) -> None:
    async def broken_query(query):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service, "_query", broken_query)
    result = await service.lookup({"external_id": "12345"})
    assert result.reason is LookupReason.DB_MISSING
    assert service.inflight_count == 0


def test_cache_evicts_least_recently_used() -> None:
    cache = LookupCache(max_items=2, ttl=60)
    hit = LookupResult(score=1, reason=LookupReason.EXTERNAL_ID)

    cache.set("a", hit)
    cache.set("b", hit)
    assert cache.get("a") == hit
    cache.set("c", hit)

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == hit
    assert cache.get("c") == hit


def test_cache_entries_expire() -> None:
    now = [1000.0]
    cache = LookupCache(max_items=4, ttl=10, time_func=lambda: now[0])
    cache.set("a", LookupResult(reason=LookupReason.NOT_FOUND))

    now[0] += 9
    assert cache.get("a") is not None
    now[0] += 1
    assert cache.get("a") is None
    assert len(cache) == 0


def test_cache_rejects_bad_bounds() -> None:
    with pytest.raises(ValueError):
        LookupCache(max_items=0)
    with pytest.raises(ValueError):
        LookupCache(ttl=-1)


def test_build_query_prefers_valid_explicit_key() -> None:
    query = build_query(LookupRequest(normalized_key="A::B", title="C", artist="D"))
    assert query.normalized_key == "a::b"
    fallback = build_query(LookupRequest(normalized_key="broken", title="C", artist="D"))
    assert fallback.normalized_key == "c::d"


@pytest.mark.asyncio
async def test_separator_in_identifier_does_not_share_cache_entry(service, session_factory) -> None:
    await _seed(session_factory, external_id="a", title="B", artist="C|", key="b::c|", score=40)
    assert build_query(LookupRequest(external_id="a|b::c")) != build_query(
        LookupRequest(external_id="a", normalized_key="b::c|")
    )

    assert (await service.lookup({"external_id": "a|b::c"})).reason is LookupReason.NOT_FOUND
    result = await service.lookup({"external_id": "a", "normalized_key": "b::c|"})
    assert _as_dict(result) == {"score": 40, "reason": "external_id"}
