"""Correction text generation and injection placement.

A correction is a short behavioral Author's Note written by the analysis backend and
injected into the host's next-turn context. Its intensity scales with how far the worst
selected dimension sits from its target relative to the drift threshold.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from backend.app.constants import (
    CORRECTION_CONTEXT_CHARS,
    CORRECTION_CONTEXT_TURNS,
    CORRECTION_MAX_TOKENS,
    IMPROVED_MARGIN,
    INTENSITY_MODERATE_RATIO,
    INTENSITY_SUBTLE_RATIO,
)
from backend.app.core.analysis import Analyzer
from backend.app.core.text_utils import sanitize_for_prompt
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import AuthorKind, CharacterProfile, Turn
from backend.app.models.state import TREND_CORRECTING, ScoreEntry
from backend.app.prompts.registry import render_prompt

logger = logging.getLogger(__name__)

CORRECTION_KEY = "driftguard_correction"
BASELINE_KEY = "driftguard_baseline"
CORRECTION_SYSTEM_PROMPT = (
    "You write brief behavioral Author's Notes for roleplay character steering. Output ONLY the note text."
)


class Intensity(str, Enum):
    SUBTLE = "SUBTLE"
    MODERATE = "MODERATE"
    STRONG = "STRONG"


INTENSITY_INSTRUCTIONS = {
    Intensity.SUBTLE: "INTENSITY: SUBTLE - Write 1-2 sentences. Use gentle, indirect behavioral cues. Light touch only.",
    Intensity.MODERATE: (
        "INTENSITY: MODERATE - Write 2-3 sentences. Use clear behavioral cues with specific mannerisms "
        "and speech patterns."
    ),
    Intensity.STRONG: (
        "INTENSITY: STRONG - Write 3-4 sentences. Use vivid, concrete behavioral cues with physical responses, "
        "speech patterns, and emotional grounding."
    ),
}


@dataclass(frozen=True)
class DriftingDimension:
    """A dimension flagged this cycle, with the drift figures the correction prompt needs."""

    dim_id: str
    deviation: Optional[float] = None
    moving_avg: Optional[float] = None
    trend: Optional[str] = None
    severe: bool = False
    ma_triggered: bool = False


@dataclass(frozen=True)
class EscalationContext:
    """What the previous attempt looked like, passed when a correction is regenerated."""

    previous_text: str
    deviation_at_correction: float
    deviation_after: float
    attempt: int
    patience: int


def select_worst(drifting: Sequence[DriftingDimension], max_dimensions: int) -> list[DriftingDimension]:
    return sorted(drifting, key=lambda d: d.deviation or 0.0, reverse=True)[:max_dimensions]


def choose_intensity(
    worst: Sequence[DriftingDimension],
    threshold: float,
    escalation: EscalationContext | None = None,
) -> Intensity:
    """Tier from worst deviation / threshold, floored at MODERATE when escalating.

    When most selected dimensions already trend back toward target (and this is not an
    escalation) the tier drops one level.
    """
    worst_deviation = max((d.deviation or 0.0 for d in worst), default=0.0)
    ratio = worst_deviation / threshold if threshold > 0 else 1.0
    if ratio < INTENSITY_SUBTLE_RATIO:
        intensity = Intensity.SUBTLE
    elif ratio < INTENSITY_MODERATE_RATIO:
        intensity = Intensity.MODERATE
    else:
        intensity = Intensity.STRONG

    if escalation is not None and intensity == Intensity.SUBTLE:
        intensity = Intensity.MODERATE

    correcting = sum(1 for d in worst if d.trend == TREND_CORRECTING)
    if correcting > len(worst) / 2 and escalation is None:
        if intensity == Intensity.STRONG:
            intensity = Intensity.MODERATE
        elif intensity == Intensity.MODERATE:
            intensity = Intensity.SUBTLE

    logger.info(
        "Correction intensity: %s (deviation ratio: %.2f, correcting: %d/%d)",
        intensity.value,
        ratio,
        correcting,
        len(worst),
    )
    return intensity


def _dims_by_id(dimensions: Sequence[ActiveDimension]) -> dict[str, ActiveDimension]:
    return {d.id: d for d in dimensions}


def describe_drifting(worst: Sequence[DriftingDimension], dimensions: Sequence[ActiveDimension]) -> str:
    by_id = _dims_by_id(dimensions)
    lines = []
    for dd in worst:
        dim = by_id.get(dd.dim_id)
        if dim is None:
            continue
        current = dd.moving_avg or 0.0
        if dd.moving_avg is not None and dd.moving_avg > dim.target:
            direction = f"too high (toward {dim.high_label})"
        else:
            direction = f"too low (toward {dim.low_label})"
        ctx = f" - {dim.context}" if dim.context else ""
        lines.append(f"- {dim.label}: target={dim.target:.2f}, current={current:.2f} ({direction}){ctx}")
    return "\n".join(lines)


def build_correction_context(turns: Sequence[Turn], character_name: str, user_name: str = "User") -> str:
    """The last few turns of the chat, each cut to CORRECTION_CONTEXT_CHARS."""
    lines = []
    for t in list(turns)[-CORRECTION_CONTEXT_TURNS:]:
        speaker = (user_name or "User") if t.author_kind == AuthorKind.USER else character_name
        lines.append(f"{speaker}: {(t.text or '')[:CORRECTION_CONTEXT_CHARS]}")
    return "\n".join(lines)


def build_drift_evidence(
    worst: Sequence[DriftingDimension],
    dimensions: Sequence[ActiveDimension],
    history: Sequence[ScoreEntry],
    window: int,
) -> str:
    by_id = _dims_by_id(dimensions)
    recent = list(history[-window:]) if window > 0 else []
    lines = []
    for dd in worst:
        dim = by_id.get(dd.dim_id)
        scores = [e.scores[dd.dim_id] for e in recent if dd.dim_id in e.scores]
        first = f"{scores[0]:.2f}" if scores else "?"
        label = dim.label if dim else dd.dim_id
        target = f"{dim.target:.2f}" if dim else "?"
        lines.append(
            f"{label}: moved from ~{first} to {dd.moving_avg or 0.0:.2f} (target: {target}) "
            f"over {len(scores)} scored messages"
        )
    return "\n".join(lines)


def build_escalation_block(escalation: EscalationContext | None) -> str:
    if escalation is None:
        return ""
    before = escalation.deviation_at_correction
    after = escalation.deviation_after
    if after < before - IMPROVED_MARGIN:
        delta = "slight improvement"
    elif after > before + IMPROVED_MARGIN:
        delta = "worsened"
    else:
        delta = "no change"
    return (
        f"IMPORTANT: A previous correction (attempt {escalation.attempt} of {escalation.patience}) was already "
        "attempted but the character continued to drift.\n"
        f"Deviation was {before:.2f} at injection. After {escalation.attempt} scored messages, deviation is now "
        f"{after:.2f} ({delta}).\n"
        "The previous correction was:\n"
        f"{escalation.previous_text}\n"
        "Generate a DIFFERENT correction with stronger behavioral anchoring. Use more specific, concrete "
        "behavioral cues. Include physical response patterns and speech mannerisms."
    )


def build_dimension_profile(dimensions: Sequence[ActiveDimension], drifting_ids: set[str]) -> str:
    lines = []
    for d in dimensions:
        status = "DRIFTING" if d.id in drifting_ids else "ON TARGET"
        ctx = f" - {d.context}" if d.context else ""
        lines.append(f"- {d.label}: {d.low_label} (0.0) <-> {d.high_label} (1.0), target={d.target:.2f}{ctx} [{status}]")
    return "\n".join(lines)


async def generate_correction(
    analyzer: Analyzer,
    drifting: Sequence[DriftingDimension],
    dimensions: Sequence[ActiveDimension],
    profile: CharacterProfile,
    turns: Sequence[Turn],
    history: Sequence[ScoreEntry],
    *,
    threshold: float,
    max_dimensions: int,
    window: int,
    escalation: EscalationContext | None = None,
) -> str:
    """Write the Author's Note for the worst `max_dimensions` drifting dimensions."""
    worst = select_worst(drifting, max_dimensions)
    intensity = choose_intensity(worst, threshold, escalation)
    name = profile.display_name()
    prompt = render_prompt(
        "correction",
        character_name=sanitize_for_prompt(name),
        intensity_block=INTENSITY_INSTRUCTIONS[intensity],
        description=sanitize_for_prompt(profile.full_text()),
        all_dimensions=build_dimension_profile(dimensions, {d.dim_id for d in drifting}),
        drifting_dimensions=describe_drifting(worst, dimensions),
        recent_context=build_correction_context(turns, name, profile.user_name),
        drift_evidence=build_drift_evidence(worst, dimensions, history, window),
        escalation_block=build_escalation_block(escalation),
    )
    result = await analyzer.analyze(
        [
            {"role": "system", "content": CORRECTION_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        max_tokens=CORRECTION_MAX_TOKENS,
        expect_json=False,
    )
    return str(result or "").strip()


def injection_depth(configured_depth: int, chat_length: int) -> int:
    """Clamp the configured depth to half the chat so early turns still see the note."""
    return min(configured_depth, max(1, chat_length // 2))
