"""Persist track mentions against the canonical track catalogue.

Looks up the tracks holding a mention's external id and normalized key,
asks ``core.identity`` for a plan and applies it inside the caller's
transaction.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import ResolutionError
from .core.identity import MentionIdentity, ResolutionPlan, TrackRef, make_track_key, plan_resolution
from .core.models import TrackMention
from .sqlmodels import Track, utcnow

logger = logging.getLogger(__name__)


async def _find_track(session: AsyncSession, column, value: Optional[str]) -> Optional[TrackRef]:
    if value is None:
        return None
    result = await session.execute(
        select(Track.id, Track.external_id, Track.normalized_key).where(column == value)
    )
    row = result.first()
    if row is None:
        return None
    return TrackRef(id=row.id, external_id=row.external_id, normalized_key=row.normalized_key)


async def plan_for_mention(session: AsyncSession, mention: TrackMention) -> ResolutionPlan:
    identity = MentionIdentity(
        external_id=mention.external_id,
        normalized_key=make_track_key(mention.title, mention.artist),
    )
    by_external_id = await _find_track(session, Track.external_id, identity.external_id)
    by_key = await _find_track(session, Track.normalized_key, identity.normalized_key)
    return plan_resolution(identity, by_external_id, by_key)


async def resolve_track(session: AsyncSession, mention: TrackMention) -> Optional[int]:
    """Resolve a mention to a track id, creating or updating the track.

    Returns None when a freshly created track cannot be read back; the caller
    skips that mention's observations. Raises ``ResolutionError`` when the
    write itself violates a constraint.
    """
    plan = await plan_for_mention(session, mention)
    now = utcnow()

    try:
        if plan.creates_track:
            session.add(Track(
                external_id=plan.external_id,
                title=mention.title,
                artist=mention.artist,
                normalized_key=plan.normalized_key,
                created_at=now,
                updated_at=now,
            ))
            await session.flush()
        else:
            track = await session.get(Track, plan.track_id)
            track.external_id = plan.external_id
            track.title = mention.title
            track.artist = mention.artist
            track.normalized_key = plan.normalized_key
            track.updated_at = now
            await session.flush()
    except IntegrityError as exc:
        raise ResolutionError(
            f"could not persist track {mention.title!r} by {mention.artist!r} ({plan.state.value}): {exc.orig}"
        ) from exc

    if not plan.creates_track:
        return plan.track_id

    created = await _find_track(session, Track.normalized_key, plan.normalized_key)
    if created is None or created.external_id != plan.external_id:
        logger.warning("Created track %r could not be read back; skipping its observations", plan.normalized_key)
        return None

    logger.debug("Created track %d (%s) via %s", created.id, plan.normalized_key, plan.state.value)
    return created.id
