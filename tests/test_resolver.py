"""Tests for persisting track mentions through the identity resolver."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from edm_popularity.core.errors import ResolutionError
from edm_popularity.core.models import TrackMention
from edm_popularity.resolver import resolve_track
from edm_popularity.sqlmodels import Track


async def _resolve(session_factory, **fields) -> int:
    async with session_factory() as session:
        async with session.begin():
            return await resolve_track(session, TrackMention(**fields))


async def _tracks(session_factory) -> list[Track]:
    async with session_factory() as session:
        result = await session.execute(select(Track).order_by(Track.id))
        return list(result.scalars())


async def _track_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Track))


@pytest.mark.asyncio
async def test_creates_track_on_first_mention(session_factory) -> None:
    track_id = await _resolve(session_factory, external_id="111", title="Song Name", artist="DJ X")

    tracks = await _tracks(session_factory)
    assert [t.id for t in tracks] == [track_id]
    assert tracks[0].external_id == "111"
    assert tracks[0].normalized_key == "song name::dj x"


@pytest.mark.asyncio
async def test_reingest_same_external_id_updates_in_place(session_factory) -> None:
    first = await _resolve(session_factory, external_id="111", title="Song Name", artist="DJ X")
    second = await _resolve(session_factory, external_id="111", title="SONG  NAME", artist="dj x")

    assert first == second
    assert await _track_count(session_factory) == 1
    track = (await _tracks(session_factory))[0]
    assert track.title == "SONG  NAME"
    assert track.artist == "dj x"
    assert track.normalized_key == "song name::dj x"


@pytest.mark.asyncio
async def test_external_id_match_refreshes_key(session_factory) -> None:
    first = await _resolve(session_factory, external_id="111", title="Song Name", artist="DJ X")
    second = await _resolve(session_factory, external_id="111", title="Song Name (Extended Mix)", artist="DJ X")

    assert first == second
    track = (await _tracks(session_factory))[0]
    assert track.normalized_key == "song name (extended mix)::dj x"


@pytest.mark.asyncio
async def test_distinct_external_ids_sharing_a_key_stay_separate(session_factory) -> None:
    first = await _resolve(session_factory, external_id="A", title="Anthem", artist="Duo")
    second = await _resolve(session_factory, external_id="B", title="ANTHEM", artist="duo")

    assert first != second
    tracks = await _tracks(session_factory)
    assert {t.external_id for t in tracks} == {"A", "B"}
    by_id = {t.external_id: t for t in tracks}
    assert by_id["A"].normalized_key == "anthem::duo"
    assert by_id["B"].normalized_key == "anthem::duo#B"

    # both ids keep resolving to their own track
    assert await _resolve(session_factory, external_id="A", title="Anthem", artist="Duo") == first
    assert await _resolve(session_factory, external_id="B", title="Anthem", artist="Duo") == second
    assert await _track_count(session_factory) == 2


@pytest.mark.asyncio
async def test_external_id_match_keeps_own_key_when_taken(session_factory) -> None:
    owner = await _resolve(session_factory, external_id="A", title="Old Title", artist="Duo")
    other = await _resolve(session_factory, title="New Title", artist="Duo")

    resolved = await _resolve(session_factory, external_id="A", title="New Title", artist="Duo")

    assert resolved == owner
    tracks = {t.id: t for t in await _tracks(session_factory)}
    assert tracks[owner].title == "New Title"
    assert tracks[owner].normalized_key == "old title::duo"
    assert tracks[other].normalized_key == "new title::duo"
    assert tracks[other].external_id is None


@pytest.mark.asyncio
async def test_key_only_track_adopts_external_id(session_factory) -> None:
    keyed = await _resolve(session_factory, title="Strobe", artist="deadmau5")
    resolved = await _resolve(session_factory, external_id="999", title="STROBE", artist="Deadmau5")

    assert resolved == keyed
    track = (await _tracks(session_factory))[0]
    assert track.external_id == "999"
    assert track.title == "STROBE"


@pytest.mark.asyncio
async def test_mention_without_id_preserves_existing_external_id(session_factory) -> None:
    owner = await _resolve(session_factory, external_id="999", title="Strobe", artist="deadmau5")
    resolved = await _resolve(session_factory, title="strobe", artist="DEADMAU5")

    assert resolved == owner
    track = (await _tracks(session_factory))[0]
    assert track.external_id == "999"
    assert track.artist == "DEADMAU5"


@pytest.mark.asyncio
async def test_legacy_apple_song_id_field_is_accepted(session_factory) -> None:
    mention = TrackMention.model_validate({"apple_song_id": 12345, "title": "Opus", "artist": "Eric Prydz"})
    assert mention.external_id == "12345"

    async with session_factory() as session:
        async with session.begin():
            track_id = await resolve_track(session, mention)

    assert (await _tracks(session_factory))[0].id == track_id


@pytest.mark.asyncio
async def test_constraint_violation_raises_resolution_error(session_factory) -> None:
    await _resolve(session_factory, external_id="A", title="Anthem", artist="Duo")

    async with session_factory() as session:
        with pytest.raises(ResolutionError):
            async with session.begin():
                # a row written behind the resolver's back takes the conflict key
                session.add(Track(external_id=None, title="x", artist="y", normalized_key="anthem::duo#B"))
                await session.flush()
                await resolve_track(session, TrackMention(external_id="B", title="Anthem", artist="Duo"))

    assert await _track_count(session_factory) == 1
