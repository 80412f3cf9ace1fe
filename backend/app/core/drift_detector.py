"""Drift detection: Kalman smoothing, trend, CUSUM triggers, moving-average fallback.

Per dimension, two windows over the score history are read each cycle:
- the last `drift_window` entries feed the Kalman estimate and the trend;
- the last `2 * drift_window` entries (cut at the dimension's CUSUM reset marker)
  feed the CUSUM accumulators.

CUSUM accumulates |score - target| rather than a signed deviation, so a character
swinging above and below its target builds evidence just like one drifting one way.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from backend.app.constants import (
    CUSUM_DECISION_MULTIPLIER,
    CUSUM_EPSILON,
    CUSUM_MIN_ALLOWANCE,
    CUSUM_SEVERE_MULTIPLIER,
    DISCRETE_SCALE,
    KALMAN_CI_Z,
    KALMAN_FALLBACK_UNCERTAINTY,
    KALMAN_OBSERVATION_VARIANCE,
    KALMAN_PROCESS_VARIANCE,
    MA_CONSECUTIVE_REQUIRED,
    MIN_SCORES_FOR_CORRECTION,
    TREND_HYSTERESIS,
)
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.state import (
    TREND_CORRECTING,
    TREND_DRIFTING,
    TREND_ERROR,
    TREND_INSUFFICIENT_DATA,
    TREND_NO_DATA,
    TREND_STABLE,
    TRENDS_WITHOUT_EVIDENCE,
    DimensionDrift,
    ScoreEntry,
)

logger = logging.getLogger(__name__)


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_variance(values: Sequence[float]) -> float | None:
    if len(values) < 2:
        return None
    m = mean(values)
    return sum((v - m) ** 2 for v in values) / len(values)


def kalman_filter(
    scores: Sequence[float],
    observation_variance: float = KALMAN_OBSERVATION_VARIANCE,
    process_variance: float = KALMAN_PROCESS_VARIANCE,
) -> tuple[float, float]:
    """Scalar Kalman filter. Returns (estimate, 95% confidence half-width).

    R (observation variance) ~0.04 matches the 0.25 rubric step; Q (process variance)
    ~0.005 models slow, gradual drift.
    """
    if not scores:
        return 0.0, 1.0
    r = observation_variance
    if len(scores) == 1:
        return float(scores[0]), math.sqrt(r) * KALMAN_CI_Z

    x = float(scores[0])
    p = r
    for s in scores[1:]:
        p_pred = p + process_variance
        k = p_pred / (p_pred + r)
        x = x + k * (s - x)
        p = (1 - k) * p_pred

    if not (math.isfinite(x) and math.isfinite(p)):
        logger.warning(
            "Kalman filter produced non-finite result (x=%s, P=%s) from %d scores; falling back to mean",
            x,
            p,
            len(scores),
        )
        finite = [s for s in scores if math.isfinite(s)]
        return mean(finite), KALMAN_FALLBACK_UNCERTAINTY
    return x, math.sqrt(p) * KALMAN_CI_Z


def snap_to_discrete(value: float) -> float:
    """Nearest rubric level; an exact tie resolves to the lower level."""
    best = DISCRETE_SCALE[0]
    for level in DISCRETE_SCALE[1:]:
        if abs(level - value) < abs(best - value):
            best = level
    return best


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def cusum(scores: Iterable[float], target: float, allowance: float, decision_threshold: float) -> tuple[float, bool]:
    """One-sided CUSUM over absolute deviation. Returns (accumulator, triggered)."""
    s = 0.0
    for x in scores:
        if not math.isfinite(x):
            continue
        s = max(0.0, s + (abs(x - target) - allowance))
    return s, s >= decision_threshold - CUSUM_EPSILON


def classify_trend(scores: Sequence[float], target: float) -> str:
    """Compare deviation of the first and second half (first half gets the extra element)."""
    mid = math.ceil(len(scores) / 2)
    first_dev = abs(mean(scores[:mid]) - target)
    second_dev = abs(mean(scores[mid:]) - target)
    if second_dev > first_dev + TREND_HYSTERESIS:
        return TREND_DRIFTING
    if second_dev < first_dev - TREND_HYSTERESIS:
        return TREND_CORRECTING
    return TREND_STABLE


@dataclass(frozen=True)
class CusumParams:
    """Allowances and decision thresholds for the ordinary and severe triggers."""

    allowance: float
    decision: float
    severe_allowance: float
    severe_decision: float

    @classmethod
    def derive(cls, threshold: float, alert_threshold: float, window: int, num_dimensions: int) -> "CusumParams":
        allowance = max(threshold * 0.5, CUSUM_MIN_ALLOWANCE)
        severe_allowance = max(alert_threshold * 0.5, CUSUM_MIN_ALLOWANCE)
        # Multiple-comparisons correction; sqrt(log2(n+1)) stays usable in 10-20 message sessions
        factor = math.sqrt(math.log2(num_dimensions + 1)) if num_dimensions > 1 else 1.0
        return cls(
            allowance=allowance,
            decision=allowance * window * CUSUM_DECISION_MULTIPLIER * factor,
            severe_allowance=severe_allowance,
            severe_decision=severe_allowance * window * CUSUM_SEVERE_MULTIPLIER * factor,
        )


def _scores_for(entries: Iterable[ScoreEntry], dim_id: str) -> list[float]:
    return [e.scores[dim_id] for e in entries if dim_id in e.scores]


def compute_drift_state(
    dimensions: Sequence[ActiveDimension],
    history: Sequence[ScoreEntry],
    window: int,
    threshold: float,
    alert_threshold: float,
    cusum_reset_after: Mapping[str, int] | None = None,
) -> dict[str, DimensionDrift]:
    """Recompute the drift state of every active dimension from the score history."""
    params = CusumParams.derive(threshold, alert_threshold, window, len(dimensions))
    reset_after = cusum_reset_after or {}
    short_window = list(history[-window:]) if window > 0 else []
    long_window = list(history[-(window * 2):]) if window > 0 else []

    drift: dict[str, DimensionDrift] = {}
    for dim in dimensions:
        recent = _scores_for(short_window, dim.id)
        marker = reset_after.get(dim.id)
        cusum_entries = long_window if marker is None else [e for e in long_window if e.message_id > marker]
        cusum_scores = _scores_for(cusum_entries, dim.id)

        if not recent:
            drift[dim.id] = DimensionDrift(trend=TREND_NO_DATA)
            continue

        estimate, uncertainty = kalman_filter(recent)
        if not math.isfinite(estimate):
            logger.warning("Non-finite estimate for %s from %d scores", dim.id, len(recent))
            drift[dim.id] = DimensionDrift(trend=TREND_ERROR)
            continue

        deviation = abs(estimate - dim.target)
        if len(recent) < MIN_SCORES_FOR_CORRECTION:
            drift[dim.id] = DimensionDrift(
                moving_avg=estimate,
                deviation=deviation,
                trend=TREND_INSUFFICIENT_DATA,
                uncertainty=uncertainty,
            )
            continue

        value, triggered = cusum(cusum_scores, dim.target, params.allowance, params.decision)
        _, severe = cusum(cusum_scores, dim.target, params.severe_allowance, params.severe_decision)
        drift[dim.id] = DimensionDrift(
            moving_avg=estimate,
            deviation=deviation,
            trend=classify_trend(recent, dim.target),
            correcting=triggered,
            severe=severe,
            cusum_value=value,
            uncertainty=uncertainty,
        )
    return drift


def apply_ma_fallback(
    drift: Mapping[str, DimensionDrift],
    counters: dict[str, int],
    threshold: float,
    excluded: Iterable[str],
    required: int = MA_CONSECUTIVE_REQUIRED,
) -> list[str]:
    """Advance the consecutive-above-threshold counters; return dimensions the fallback flags.

    `excluded` are dimensions already triggered by CUSUM or in the ceiling set; their
    counters reset to zero.
    """
    skip = set(excluded)
    flagged: list[str] = []
    for dim_id, d in drift.items():
        if dim_id in skip:
            counters[dim_id] = 0
            continue
        if d.deviation is not None and d.deviation > threshold and d.trend not in TRENDS_WITHOUT_EVIDENCE:
            counters[dim_id] = counters.get(dim_id, 0) + 1
        else:
            counters[dim_id] = 0
        if counters[dim_id] >= required:
            logger.info(
                "MA fallback trigger: %s deviation %.3f > %.2f for %d consecutive cycles",
                dim_id,
                d.deviation or 0.0,
                threshold,
                counters[dim_id],
            )
            flagged.append(dim_id)
    return flagged


def post_correction_averages(
    dim_ids: Iterable[str],
    history: Sequence[ScoreEntry],
    since_message: int,
) -> dict[str, float | None]:
    """Mean score per dimension using only entries scored after `since_message`."""
    after = [e for e in history if e.message_id > since_message]
    out: dict[str, float | None] = {}
    for dim_id in dim_ids:
        scores = _scores_for(after, dim_id)
        out[dim_id] = mean(scores) if scores else None
    return out
