"""Append-only observation log and source registration.

Both helpers write through the caller's session so they take part in the
per-source ingestion transaction.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .sqlmodels import Observation, Source, utcnow


def finite_value(value: Any) -> Optional[float]:
    """Coerce a raw signal to a float, or None when it is not a finite number."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def observation_context(adapter: str, signal_context: Any) -> dict:
    """Context stored with every observation: the adapter name plus any mapping the source supplied."""
    context = {"adapter": adapter}
    if isinstance(signal_context, Mapping):
        context.update(signal_context)
    return context


async def upsert_source(
    session: AsyncSession,
    name: str,
    url: Optional[str],
    source_type: str = "adapter",
) -> int:
    """Create or refresh a source row by name and return its id."""
    result = await session.execute(select(Source).where(Source.name == name))
    source = result.scalar_one_or_none()
    now = utcnow()
    if source:
        source.url = url
        source.updated_at = now
    else:
        source = Source(name=name, type=source_type, url=url, created_at=now, updated_at=now)
        session.add(source)
    await session.flush()
    return source.id


def append_observation(
    session: AsyncSession,
    *,
    track_id: int,
    source_id: int,
    observed_at: datetime,
    metric: str,
    value: Any,
    context: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Queue one observation row; returns False when the value is skipped.

    Non-finite values are dropped silently. References are not checked here:
    a missing track or source fails the enclosing transaction at flush.
    """
    number = finite_value(value)
    if number is None:
        return False

    session.add(Observation(
        track_id=track_id,
        source_id=source_id,
        observed_at=observed_at,
        metric=str(metric),
        value=number,
        context=json.dumps(dict(context), default=str) if context is not None else None,
    ))
    return True
