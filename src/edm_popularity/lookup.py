"""Read-only score lookups for rendering clients.

Queries go to the track's external id first and fall back to the normalized
``title::artist`` key. Every failure is reported through ``LookupReason``;
``ScoreLookupService.lookup`` never raises.

Results are kept in a bounded LRU cache with a TTL, and concurrent identical
queries share one in-flight database query. In-flight entries are dropped as
soon as their query settles, so that map never outgrows the number of
concurrent callers.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Hashable, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .core.identity import make_track_key, normalize_text, parse_track_key
from .core.models import LookupReason, LookupRequest, LookupResult
from .db import create_reader_engine, get_db_path
from .sqlmodels import Score, Track

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 512
DEFAULT_CACHE_TTL_SECONDS = 300.0

TimeProvider = Callable[[], float]


@dataclass(frozen=True)
class LookupQuery:
    """A request reduced to the keys actually used to query the store."""

    external_id: Optional[str]
    normalized_key: Optional[str]

    @property
    def is_usable(self) -> bool:
        return bool(self.external_id or self.normalized_key)


def build_query(request: LookupRequest) -> LookupQuery:
    """A well-formed explicit ``normalized_key`` wins over title and artist."""
    key = parse_track_key(request.normalized_key)
    if key is None and normalize_text(request.title) and normalize_text(request.artist):
        key = make_track_key(request.title, request.artist)
    return LookupQuery(external_id=request.external_id, normalized_key=key)


@dataclass
class _CacheEntry:
    result: LookupResult
    expires_at: float


class LookupCache:
    """In-memory TTL cache with LRU eviction for lookup results."""

    def __init__(
        self,
        *,
        max_items: int = DEFAULT_CACHE_SIZE,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        time_func: Optional[TimeProvider] = None,
    ) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        if ttl < 0:
            raise ValueError("ttl must be non-negative")
        self._max_items = max_items
        self._ttl = ttl
        self._entries: "OrderedDict[Hashable, _CacheEntry]" = OrderedDict()
        self._now: TimeProvider = time_func or time.monotonic

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[LookupResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._now() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return entry.result

    def set(self, key: Hashable, result: LookupResult) -> None:
        self._entries.pop(key, None)
        self._entries[key] = _CacheEntry(result=result, expires_at=self._now() + self._ttl)
        while len(self._entries) > self._max_items:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted lookup cache entry %s", evicted)

    def clear(self) -> None:
        self._entries.clear()


def _cache_from_env() -> LookupCache:
    return LookupCache(
        max_items=int(os.environ.get("LOOKUP_CACHE_SIZE", str(DEFAULT_CACHE_SIZE))),
        ttl=float(os.environ.get("LOOKUP_CACHE_TTL_SECONDS", str(DEFAULT_CACHE_TTL_SECONDS))),
    )


class ScoreLookupService:
    """Serves scores from the popularity database without ever writing to it."""

    def __init__(self, db_path: Optional[Path] = None, cache: Optional[LookupCache] = None):
        self._db_path = db_path
        self._cache = cache if cache is not None else _cache_from_env()
        self._engine: Optional[AsyncEngine] = None
        self._inflight: dict[LookupQuery, asyncio.Future] = {}

    @property
    def db_path(self) -> Path:
        return self._db_path or get_db_path()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def lookup(self, request: Union[LookupRequest, Mapping[str, Any], None]) -> LookupResult:
        try:
            if not isinstance(request, LookupRequest):
                request = LookupRequest.model_validate(request or {})
        except ValidationError:
            return LookupResult(reason=LookupReason.INSUFFICIENT_METADATA)

        query = build_query(request)
        if not query.is_usable:
            return LookupResult(reason=LookupReason.INSUFFICIENT_METADATA)

        cached = self._cache.get(query)
        if cached is not None:
            return cached

        pending = self._inflight.get(query)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # the owning caller was cancelled; run the query ourselves

        return await self._query_and_share(query)

    async def _query_and_share(self, query: LookupQuery) -> LookupResult:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[query] = future
        try:
            try:
                result = await self._query(query)
            except Exception as exc:
                logger.error("Score lookup failed unexpectedly: %s", exc, exc_info=True)
                result = LookupResult(reason=LookupReason.DB_MISSING)
            future.set_result(result)
        finally:
            self._inflight.pop(query, None)
            if not future.done():
                future.cancel()

        if result.reason is not LookupReason.DB_MISSING:
            self._cache.set(query, result)
        return result

    async def _query(self, query: LookupQuery) -> LookupResult:
        if not self.db_path.exists():
            return LookupResult(reason=LookupReason.DB_MISSING)

        try:
            engine = self._get_engine()
            async with engine.connect() as conn:
                if query.external_id:
                    score = await conn.scalar(
                        select(Score.score)
                        .join(Track, Track.id == Score.track_id)
                        .where(Track.external_id == query.external_id)
                    )
                    if score is not None:
                        return LookupResult(score=int(score), reason=LookupReason.EXTERNAL_ID)

                if query.normalized_key:
                    score = await conn.scalar(
                        select(Score.score)
                        .join(Track, Track.id == Score.track_id)
                        .where(Track.normalized_key == query.normalized_key)
                    )
                    if score is not None:
                        return LookupResult(score=int(score), reason=LookupReason.TITLE_ARTIST)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Score lookup against %s failed: %s", self.db_path, exc)
            return LookupResult(reason=LookupReason.DB_MISSING)

        return LookupResult(reason=LookupReason.NOT_FOUND)

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_reader_engine(self.db_path)
        return self._engine

    def invalidate(self) -> None:
        """Forget cached results, e.g. after a pipeline run rewrote the scores."""
        self._cache.clear()

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
