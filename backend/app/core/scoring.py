"""Scoring pipeline: eligibility checks and rubric-based scoring of one assistant reply.

Dimensions are shuffled and scored in chunks of SCORING_CHUNK_SIZE, one analysis call
per chunk, so one dimension's score does not bleed into its neighbours. A failed chunk
is skipped; the remaining chunks still count.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from backend.app.config import DriftSettings
from backend.app.constants import (
    CONTEXT_TURN_HEAD_CHARS,
    CONTEXT_TURN_MAX_CHARS,
    CONTEXT_TURN_TAIL_CHARS,
    RESPONSE_HEAD_CHARS,
    RESPONSE_MAX_CHARS,
    RESPONSE_TAIL_CHARS,
    SCORING_CHUNK_SIZE,
    SCORING_CONTEXT_TURNS,
    SCORING_MAX_TOKENS,
)
from backend.app.core.analysis import Analyzer
from backend.app.core.drift_detector import clamp01, snap_to_discrete
from backend.app.core.json_repair import extract_json
from backend.app.core.text_utils import head_tail, is_ooc_text, sanitize_for_prompt
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import AuthorKind, CharacterProfile, Turn
from backend.app.models.state import NOT_APPLICABLE, DimensionScore, NotApplicable, Observed, SessionState
from backend.app.prompts.registry import render_prompt

logger = logging.getLogger(__name__)

NO_CONTEXT_TEXT = "(No prior messages available)"
REASONING_SEPARATOR = "\n---\n"


@dataclass
class ScoringResult:
    """Per-dimension outcome of scoring one reply. Dimensions absent here were unscored."""

    scores: Dict[str, DimensionScore] = field(default_factory=dict)
    reasoning: Optional[str] = None

    @property
    def observed(self) -> Dict[str, float]:
        return {k: v.value for k, v in self.scores.items() if isinstance(v, Observed)}

    @property
    def not_applicable(self) -> List[str]:
        return [k for k, v in self.scores.items() if isinstance(v, NotApplicable)]

    def is_empty(self) -> bool:
        return not self.observed


# --- Eligibility ---


def is_greeting(turn: Turn, profile: CharacterProfile | None) -> bool:
    """The greeting is written by the card author, not the model."""
    if turn.index == 0:
        return True
    first = profile.first_message.strip() if profile and profile.first_message else ""
    return bool(first) and turn.text.strip() == first


def is_scorable_turn(turn: Turn | None, profile: CharacterProfile | None) -> bool:
    """Assistant turn that is neither the greeting nor out of character."""
    if turn is None or not turn.is_assistant:
        return False
    if is_greeting(turn, profile):
        return False
    return not is_ooc_text(turn.text)


def count_assistant_turns_since(turns: Sequence[Turn], last_scored_index: int | None) -> int:
    """Assistant turns after the last scored index, counted back from the end of the chat."""
    count = 0
    for turn in reversed(turns):
        if last_scored_index is not None and turn.index <= last_scored_index:
            break
        if turn.is_assistant:
            count += 1
    return count


def should_score(state: SessionState, turns: Sequence[Turn], settings: DriftSettings) -> bool:
    """Frequency gate for unforced scoring."""
    if state.messages_scored == 0 and settings.score_on_first:
        return True
    return count_assistant_turns_since(turns, state.last_scored_message_id) >= settings.score_frequency


# --- Prompt pieces ---


def truncate_response(text: str) -> str:
    out = head_tail(text or "", RESPONSE_MAX_CHARS, RESPONSE_HEAD_CHARS, RESPONSE_TAIL_CHARS, "\n[...truncated...]\n")
    if len(out) != len(text or ""):
        logger.debug("Response truncated for scoring: %d -> %d chars", len(text), len(out))
    return out


def build_recent_context(
    turns: Sequence[Turn],
    message_index: int,
    character_name: str,
    user_name: str = "User",
) -> str:
    """Up to SCORING_CONTEXT_TURNS turns before the scored one, each head/tail truncated."""
    start = max(0, message_index - SCORING_CONTEXT_TURNS)
    window = [t for t in turns if start <= t.index < message_index]
    if not window:
        return NO_CONTEXT_TEXT
    lines = []
    for t in window:
        text = head_tail(t.text or "", CONTEXT_TURN_MAX_CHARS, CONTEXT_TURN_HEAD_CHARS, CONTEXT_TURN_TAIL_CHARS, "\n[...]\n")
        speaker = (user_name or "User") if t.author_kind == AuthorKind.USER else character_name
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines)


def format_dimension_rubric(dim: ActiveDimension) -> str:
    rubric = "\n".join(f"    {level}: {desc}" for level, desc in dim.rubric.items())
    ctx = f"\n  Character context: {dim.context}" if dim.context else ""
    return (
        f"- {dim.id}: {dim.low_label} (0.0) <-> {dim.high_label} (1.0)\n"
        f"  {dim.scoring_guidance}\n"
        f"  Calibrated target: {dim.target:.2f}{ctx}\n"
        f"  Rubric:\n{rubric}"
    )


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def parse_score(raw: Any) -> DimensionScore | None:
    """Model answer for one dimension -> Observed / NOT_APPLICABLE, or None when unusable."""
    if raw is None:
        return NOT_APPLICABLE
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return Observed(snap_to_discrete(clamp01(value)))


def extract_reasoning(raw_text: Any) -> str | None:
    """Chain-of-thought text written before the JSON object, if any."""
    if not isinstance(raw_text, str):
        return None
    start = raw_text.find("{")
    if start > 0:
        return raw_text[:start].strip() or None
    return None


async def score_response(
    analyzer: Analyzer,
    dimensions: Sequence[ActiveDimension],
    response_text: str,
    recent_context: str,
    character_name: str,
    profile_text: str = "",
    rng: random.Random | None = None,
) -> ScoringResult:
    """Score one reply on every active dimension."""
    result = ScoringResult()
    if not dimensions:
        return result

    name = sanitize_for_prompt(character_name) or "the character"
    response = truncate_response(response_text)
    description = sanitize_for_prompt(profile_text)
    shuffled = list(dimensions)
    (rng or random).shuffle(shuffled)
    chunks = chunked(shuffled, SCORING_CHUNK_SIZE)
    logger.debug("Scoring %d dimensions in %d chunk(s)", len(shuffled), len(chunks))

    reasoning: list[str] = []
    for ci, chunk in enumerate(chunks, start=1):
        prompt = render_prompt(
            "scoring",
            character_name=name,
            dimensions_with_rubrics="\n\n".join(format_dimension_rubric(d) for d in chunk),
            character_description=description,
            recent_context=recent_context,
            response_text=response,
        )
        messages = [
            {
                "role": "system",
                "content": f"You are a character analyst. Score only {name}'s behavior on dimensional rubrics. "
                "Provide reasoning then JSON scores.",
            },
            {"role": "user", "content": prompt},
        ]
        try:
            # Prose mode: the model reasons first, then emits the JSON scores
            raw_text = await analyzer.analyze(messages, max_tokens=SCORING_MAX_TOKENS, expect_json=False)
        except Exception as e:
            logger.warning("Chunk %d/%d scoring failed: %s; skipping chunk", ci, len(chunks), e)
            continue

        raw_scores = extract_json(raw_text)
        if not isinstance(raw_scores, dict):
            logger.warning("Chunk %d/%d did not return a valid object; skipping chunk", ci, len(chunks))
            continue
        chunk_reasoning = extract_reasoning(raw_text)
        if chunk_reasoning:
            reasoning.append(chunk_reasoning)

        for dim in chunk:
            if dim.id not in raw_scores:
                continue
            score = parse_score(raw_scores[dim.id])
            if score is None:
                logger.warning("Non-numeric score for %r: %r; skipping", dim.id, raw_scores[dim.id])
                continue
            result.scores[dim.id] = score

    unscored = [d.id for d in dimensions if d.id not in result.scores]
    if unscored:
        logger.warning("%d/%d dimensions unscored: %s", len(unscored), len(dimensions), ", ".join(unscored))
    logger.info(
        "%d dimensions N/A, %d dimensions scored", len(result.not_applicable), len(result.observed)
    )
    result.reasoning = REASONING_SEPARATOR.join(reasoning) if reasoning else None
    return result
