"""Track identity resolution rules.

A mention is matched to a stored track through two keys: the source's
external id, which is authoritative, and a normalized ``title::artist`` key,
which is a best-effort merge heuristic for sources without ids. This module is
pure: it classifies a mention against the tracks currently holding those keys
and returns a plan; ``edm_popularity.resolver`` carries the plan out.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

KEY_SEPARATOR = "::"
CONFLICT_SEPARATOR = "#"

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: object) -> str:
    """Lowercase, collapse internal whitespace and trim."""
    return _WHITESPACE_RE.sub(" ", str(value or "").lower()).strip()


def make_track_key(title: object, artist: object) -> str:
    return f"{normalize_text(title)}{KEY_SEPARATOR}{normalize_text(artist)}"


def parse_track_key(key: Optional[str]) -> Optional[str]:
    """Normalize a caller-supplied ``title::artist`` key.

    Returns None when the key has no separator or either side is empty.
    """
    if not key or KEY_SEPARATOR not in key:
        return None
    title, artist = key.split(KEY_SEPARATOR, 1)
    if not normalize_text(title) or not normalize_text(artist):
        return None
    return make_track_key(title, artist)


class ResolutionState(str, Enum):
    NO_EXTERNAL_ID = "NoExternalId"
    MATCHED_BY_EXTERNAL_ID = "MatchedByExternalId"
    MATCHED_BY_KEY_ONLY = "MatchedByKeyOnly"
    KEY_CONFLICT = "KeyConflict"
    NO_MATCH = "NoMatch"


@dataclass(frozen=True)
class TrackRef:
    """The identity columns of a stored track."""

    id: int
    external_id: Optional[str]
    normalized_key: str


@dataclass(frozen=True)
class MentionIdentity:
    external_id: Optional[str]
    normalized_key: str


@dataclass(frozen=True)
class ResolutionPlan:
    """What to write for one mention.

    ``track_id`` is None when a new track must be created.
    """

    state: ResolutionState
    track_id: Optional[int]
    external_id: Optional[str]
    normalized_key: str

    @property
    def creates_track(self) -> bool:
        return self.track_id is None


def classify_mention(
    mention: MentionIdentity,
    by_external_id: Optional[TrackRef],
    by_key: Optional[TrackRef],
) -> ResolutionState:
    """Pick the resolution state for a mention.

    ``by_external_id`` is the track holding the mention's external id and
    ``by_key`` the track holding its normalized key; either may be None.
    """
    if mention.external_id is None:
        return ResolutionState.NO_EXTERNAL_ID if by_key else ResolutionState.NO_MATCH

    if by_external_id is not None:
        if by_key is not None and by_key.id != by_external_id.id:
            return ResolutionState.KEY_CONFLICT
        return ResolutionState.MATCHED_BY_EXTERNAL_ID

    if by_key is not None:
        # the key holder has no id match here, so any id it carries is a different one
        if by_key.external_id:
            return ResolutionState.KEY_CONFLICT
        return ResolutionState.MATCHED_BY_KEY_ONLY

    return ResolutionState.NO_MATCH


def conflict_key(normalized_key: str, external_id: str) -> str:
    """Key for a new track whose normalized key already belongs to another external id."""
    return f"{normalized_key}{CONFLICT_SEPARATOR}{external_id}"


def _update_by_external_id(mention, by_external_id, by_key):
    return ResolutionPlan(
        ResolutionState.MATCHED_BY_EXTERNAL_ID,
        by_external_id.id,
        mention.external_id,
        mention.normalized_key,
    )


def _adopt_external_id(mention, by_external_id, by_key):
    return ResolutionPlan(
        ResolutionState.MATCHED_BY_KEY_ONLY,
        by_key.id,
        mention.external_id,
        mention.normalized_key,
    )


def _resolve_conflict(mention, by_external_id, by_key):
    if by_external_id is not None:
        # never take a key owned by another track
        return ResolutionPlan(
            ResolutionState.KEY_CONFLICT,
            by_external_id.id,
            mention.external_id,
            by_external_id.normalized_key,
        )
    return ResolutionPlan(
        ResolutionState.KEY_CONFLICT,
        None,
        mention.external_id,
        conflict_key(mention.normalized_key, mention.external_id),
    )


def _update_by_key(mention, by_external_id, by_key):
    return ResolutionPlan(
        ResolutionState.NO_EXTERNAL_ID,
        by_key.id,
        by_key.external_id,
        mention.normalized_key,
    )


def _create(mention, by_external_id, by_key):
    return ResolutionPlan(
        ResolutionState.NO_MATCH,
        None,
        mention.external_id,
        mention.normalized_key,
    )


PlanBuilder = Callable[[MentionIdentity, Optional[TrackRef], Optional[TrackRef]], ResolutionPlan]

TRANSITIONS: dict[ResolutionState, PlanBuilder] = {
    ResolutionState.MATCHED_BY_EXTERNAL_ID: _update_by_external_id,
    ResolutionState.MATCHED_BY_KEY_ONLY: _adopt_external_id,
    ResolutionState.KEY_CONFLICT: _resolve_conflict,
    ResolutionState.NO_EXTERNAL_ID: _update_by_key,
    ResolutionState.NO_MATCH: _create,
}


def plan_resolution(
    mention: MentionIdentity,
    by_external_id: Optional[TrackRef],
    by_key: Optional[TrackRef],
) -> ResolutionPlan:
    state = classify_mention(mention, by_external_id, by_key)
    return TRANSITIONS[state](mention, by_external_id, by_key)
