"""Pydantic data models shared across the package.

Adapters, the ingestion pipeline, the lookup service and the MCP server all
exchange these models; the storage layer has its own ORM classes in
``edm_popularity.sqlmodels``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class MetricKind(str, Enum):
    """Metric names with a dedicated scale function or derivation rule."""

    CHART_POINTS = "chart_points"
    CHART_RANK = "chart_rank"
    YOUTUBE_VIEWS_M = "youtube_views_m"
    PLAYLIST_MENTIONS = "playlist_mentions"
    DJ_SUPPORT = "dj_support"

    @classmethod
    def from_name(cls, name: str) -> Optional["MetricKind"]:
        """Return the kind for a metric name, or None for metrics outside the enum."""
        try:
            return cls(name)
        except ValueError:
            return None


class LookupReason(str, Enum):
    """Why a lookup returned the score it did."""

    EXTERNAL_ID = "external_id"
    TITLE_ARTIST = "title_artist"
    NOT_FOUND = "not_found"
    INSUFFICIENT_METADATA = "insufficient_metadata"
    DB_MISSING = "db_missing"


def _blank_to_none(value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TrackMention(BaseModel):
    """One track as reported by a source adapter."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, extra="ignore")

    external_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("external_id", "apple_song_id"),
        description="Authoritative storefront id, when the source knows it",
    )
    title: str = ""
    artist: str = ""
    signals: dict[str, Any] = Field(default_factory=dict)
    signal_context: Any = None

    @field_validator("external_id", mode="before")
    @classmethod
    def _normalize_external_id(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("title", "artist", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("signals", mode="before")
    @classmethod
    def _signals_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @property
    def is_complete(self) -> bool:
        return bool(self.title and self.artist)


class AdapterPayload(BaseModel):
    """Normalized output of one adapter run."""

    model_config = ConfigDict(populate_by_name=True)

    source_name: Optional[str] = Field(None, validation_alias=AliasChoices("sourceName", "source_name"))
    source_url: Optional[str] = Field(None, validation_alias=AliasChoices("sourceUrl", "source_url"))
    tracks: list[TrackMention] = Field(default_factory=list)
    tracks_seen: int = Field(0, description="Entries in the raw tracks list, including malformed ones")

    @model_validator(mode="before")
    @classmethod
    def _count_raw_tracks(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("tracks"), list):
            return {**data, "tracks_seen": len(data["tracks"])}
        return data

    @field_validator("tracks", mode="before")
    @classmethod
    def _drop_non_mappings(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [item for item in value if isinstance(item, (dict, TrackMention))]


class LookupRequest(BaseModel):
    """Score query from a rendering client."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, extra="ignore")

    external_id: Optional[str] = Field(None, validation_alias=AliasChoices("external_id", "apple_song_id"))
    title: Optional[str] = None
    artist: Optional[str] = None
    normalized_key: Optional[str] = Field(None, validation_alias=AliasChoices("normalized_key", "track_key"))

    @field_validator("external_id", "title", "artist", "normalized_key", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LookupResult(BaseModel):
    """Lookup response; ``score`` is None whenever nothing was matched."""

    score: Optional[int] = None
    reason: LookupReason


class SourceRun(BaseModel):
    """Outcome of ingesting one adapter during a pipeline run."""

    source: str
    status: Literal["ok", "error"]
    tracks_seen: Optional[int] = None
    tracks_processed: Optional[int] = None
    observations_inserted: Optional[int] = None
    error: Optional[str] = None


class RunSummary(BaseModel):
    """Per-execution report persisted as ``last_update.json``."""

    updated_at: datetime
    database_path: str
    delta: dict[str, int]
    counts: dict[str, int]
    source_runs: list[SourceRun] = Field(default_factory=list)
    adapters_used: list[str] = Field(default_factory=list)
    scores_computed: int = 0
