"""Dimension calibration: one analysis call maps a character profile to per-dimension targets.

The pinned calibration (CalibrationStore) lets a character keep its targets across chats
until its profile text changes.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Any, List, Mapping

from backend.app.constants import (
    CALIBRATION_CONTEXT_MAX_CHARS,
    CALIBRATION_DEFAULT_TARGET,
    CALIBRATION_MAX_TOKENS,
)
from backend.app.core.analysis import Analyzer
from backend.app.core.catalog import DIMENSION_CATALOG, build_dimensions_list_text
from backend.app.core.drift_detector import clamp01
from backend.app.core.text_utils import sanitize_for_prompt
from backend.app.models.dimensions import ActiveDimension
from backend.app.prompts.registry import render_prompt

logger = logging.getLogger(__name__)

CALIBRATION_SYSTEM_PROMPT = "You are a character analyst. Respond only in valid JSON."
CHARACTER_DIMENSIONS_KEY = "character_dimensions"


class CalibrationError(Exception):
    """Raised when calibration cannot produce a usable dimension set."""


def _coerce_target(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return CALIBRATION_DEFAULT_TARGET
    return clamp01(float(value))


def resolve_dimensions(data: Any) -> List[ActiveDimension]:
    """Turn a parsed calibration answer into active dimensions, in catalog order.

    null entries deactivate a dimension, non-object entries are skipped, a missing or
    non-numeric target defaults to 0.5 and targets are clamped to [0, 1].
    """
    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, dict):
        return []

    active: list[ActiveDimension] = []
    for dim in DIMENSION_CATALOG:
        entry = data.get(dim.id)
        if entry is None:
            continue
        if not isinstance(entry, dict):
            logger.warning("Calibration entry for %s is not an object (%s); skipping", dim.id, type(entry).__name__)
            continue
        if "target" in entry and entry["target"] is None:
            continue
        context = entry.get("context")
        active.append(
            ActiveDimension(
                **dim.model_dump(),
                target=_coerce_target(entry.get("target")),
                context=str(context)[:CALIBRATION_CONTEXT_MAX_CHARS] if context else "",
            )
        )
    return active


async def calibrate_dimensions(analyzer: Analyzer, profile_text: str, character_name: str = "") -> List[ActiveDimension]:
    """Ask the analysis backend for per-dimension targets. Empty profile -> []."""
    if not profile_text or not profile_text.strip():
        return []
    name = sanitize_for_prompt(character_name) or "the character"
    prompt = render_prompt(
        "calibration",
        character_name=name,
        dimensions_list=build_dimensions_list_text(),
        description=sanitize_for_prompt(profile_text),
    )
    result = await analyzer.analyze(
        [
            {"role": "system", "content": CALIBRATION_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        max_tokens=CALIBRATION_MAX_TOKENS,
        expect_json=True,
    )
    dims = resolve_dimensions(result)
    logger.info("Calibrated %d active dimensions for %s", len(dims), name)
    return dims


class CalibrationStore:
    """Pinned calibrations keyed by character, kept in the global settings store.

    Layout under `character_dimensions`:
        {character_key: {"dimensions": [...], "calibrated_at": epoch_s, "card_hash": str}}
    """

    def __init__(self, settings_store):
        self.settings_store = settings_store

    def _all(self) -> dict[str, Any]:
        data = self.settings_store.get(CHARACTER_DIMENSIONS_KEY)
        return dict(data) if isinstance(data, Mapping) else {}

    def load(self, character_key: str, card_hash: str) -> List[ActiveDimension] | None:
        """Pinned dimensions for the character, or None when absent or the profile changed."""
        entry = self._all().get(character_key)
        if not isinstance(entry, Mapping):
            return None
        if entry.get("card_hash") != card_hash:
            logger.info("Pinned calibration for %s is stale (profile changed)", character_key)
            return None
        raw = entry.get("dimensions")
        if not isinstance(raw, list) or not raw:
            return None
        try:
            return [ActiveDimension.model_validate(d) for d in raw]
        except ValueError as e:
            logger.warning("Discarding unreadable pinned calibration for %s: %s", character_key, e)
            return None

    def save(self, character_key: str, dimensions: List[ActiveDimension], card_hash: str) -> None:
        data = self._all()
        data[character_key] = {
            "dimensions": [d.model_dump(mode="json") for d in dimensions],
            "calibrated_at": time.time(),
            "card_hash": card_hash,
        }
        self.settings_store.set(CHARACTER_DIMENSIONS_KEY, data)

    def clear(self) -> None:
        self.settings_store.set(CHARACTER_DIMENSIONS_KEY, {})
