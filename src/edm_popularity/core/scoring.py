"""Popularity scoring: per-metric scaling and the weighted composite.

Every metric average is mapped to a 0-100 sub-score, then the sub-scores of
the weighted metrics present for a track are blended into one integer score.
This module is pure; ``edm_popularity.ingestors`` feeds it the per-track
averages and persists the result.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Mapping, Optional, Union

from .models import MetricKind

logger = logging.getLogger(__name__)

SCORE_METHOD = "weighted_v1"
DEFAULT_MAX_RANK = 100

WEIGHTS: dict[MetricKind, float] = {
    MetricKind.CHART_POINTS: 0.55,
    MetricKind.YOUTUBE_VIEWS_M: 0.20,
    MetricKind.PLAYLIST_MENTIONS: 0.35,
    MetricKind.DJ_SUPPORT: 0.45,
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def clamp_score(value: float) -> int:
    """Round and clamp to an integer score in [0, 100]."""
    return int(clamp(round_half_up(value)))


def rank_to_points(rank: Optional[float], max_rank: Optional[float] = DEFAULT_MAX_RANK) -> Optional[int]:
    """Convert a chart position into chart points.

    Rank 1 is worth 100 points and the last position on a ``max_rank`` chart
    is worth 0, linear in between. Ranks outside the chart are clamped onto it.
    """
    if rank is None or not math.isfinite(rank):
        return None
    safe_max = DEFAULT_MAX_RANK
    if max_rank is not None and math.isfinite(max_rank) and max_rank >= 1:
        safe_max = max(1, round_half_up(max_rank))
    safe_rank = max(1, min(safe_max, round_half_up(rank)))
    if safe_max == 1:
        return 100
    return clamp_score(((safe_max - safe_rank) / (safe_max - 1)) * 100)


def _unit_clamp(value: float) -> float:
    return clamp(value)


def _views_millions(value: float) -> float:
    # 50M monthly views saturates the sub-score
    return clamp(value * 2)


SCALE_FUNCTIONS: dict[MetricKind, Callable[[float], float]] = {
    MetricKind.CHART_POINTS: _unit_clamp,
    MetricKind.PLAYLIST_MENTIONS: _unit_clamp,
    MetricKind.DJ_SUPPORT: _unit_clamp,
    MetricKind.YOUTUBE_VIEWS_M: _views_millions,
}

DEFAULT_SCALE: Callable[[float], float] = _unit_clamp


def scale_metric(metric: Union[MetricKind, str], value: Optional[float]) -> Optional[float]:
    """Map a metric value to a 0-100 sub-score.

    Metrics without an entry in ``SCALE_FUNCTIONS`` (including names outside
    ``MetricKind``) fall back to a plain clamp.
    """
    if value is None or not math.isfinite(value):
        return None
    kind = metric if isinstance(metric, MetricKind) else MetricKind.from_name(metric)
    scale = SCALE_FUNCTIONS.get(kind, DEFAULT_SCALE) if kind is not None else DEFAULT_SCALE
    return scale(value)


def effective_metrics(
    metrics: Mapping[str, float],
    max_rank: Optional[float] = None,
) -> dict[str, float]:
    """Drop non-finite values and derive chart points from chart rank when missing."""
    effective = {
        name: float(value)
        for name, value in metrics.items()
        if value is not None and math.isfinite(value)
    }
    points_key = MetricKind.CHART_POINTS.value
    rank_key = MetricKind.CHART_RANK.value
    if points_key not in effective and rank_key in effective:
        points = rank_to_points(effective[rank_key], max_rank if max_rank is not None else DEFAULT_MAX_RANK)
        if points is not None:
            effective[points_key] = float(points)
    return effective


def calculate_score(metrics: Mapping[str, float], max_rank: Optional[float] = None) -> int:
    """Weighted composite of the recognized metrics present, 0 when none are."""
    effective = effective_metrics(metrics, max_rank)

    weighted_sum = 0.0
    applied_weight = 0.0
    for kind, weight in WEIGHTS.items():
        scaled = scale_metric(kind, effective.get(kind.value))
        if scaled is None:
            continue
        weighted_sum += scaled * weight
        applied_weight += weight

    if applied_weight == 0:
        return 0
    return clamp_score(weighted_sum / applied_weight)
