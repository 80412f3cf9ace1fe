"""Baseline anchor: a persistent Author's Note generated once per calibration."""
from __future__ import annotations

import logging
from typing import Sequence

from backend.app.constants import BASELINE_DEVIATION_FLAG, BASELINE_MAX_TOKENS
from backend.app.core.analysis import Analyzer
from backend.app.core.text_utils import sanitize_for_prompt
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import CharacterProfile
from backend.app.prompts.registry import render_prompt

logger = logging.getLogger(__name__)

BASELINE_SYSTEM_PROMPT = (
    "You write brief behavioral Author's Notes for roleplay character anchoring. Output ONLY the note text."
)


def _position(dim: ActiveDimension) -> str:
    if dim.target <= 0.3:
        return dim.low_label
    if dim.target >= 0.7:
        return dim.high_label
    return f"between {dim.low_label} and {dim.high_label}"


def build_dimensions_summary(dimensions: Sequence[ActiveDimension]) -> str:
    """One line per dimension, most atypical (farthest from the AI default) first."""
    ordered = sorted(dimensions, key=lambda d: abs(d.target - d.ai_default), reverse=True)
    lines = []
    for d in ordered:
        flag = ""
        if abs(d.target - d.ai_default) >= BASELINE_DEVIATION_FLAG:
            flag = f" [DEVIATES from AI default {d.ai_default:.2f}]"
        ctx = f" - {d.context}" if d.context else ""
        lines.append(f"- {d.label}: {_position(d)} (target: {d.target:.2f}){flag}{ctx}")
    return "\n".join(lines)


async def generate_baseline(
    analyzer: Analyzer,
    dimensions: Sequence[ActiveDimension],
    profile: CharacterProfile,
) -> str | None:
    if not dimensions:
        return None
    prompt = render_prompt(
        "baseline",
        character_name=sanitize_for_prompt(profile.display_name()),
        description=sanitize_for_prompt(profile.full_text()),
        dimensions_summary=build_dimensions_summary(dimensions),
    )
    result = await analyzer.analyze(
        [
            {"role": "system", "content": BASELINE_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        max_tokens=BASELINE_MAX_TOKENS,
        expect_json=False,
    )
    text = str(result or "").strip()
    return text or None
