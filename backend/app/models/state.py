"""Session state: score history, drift state, correction record and the per-chat counters.

SessionState is the only durable state the engine owns. It is stored as JSON in the
per-chat metadata store and rebuilt with SessionState.from_stored(), which drops
corrupt history entries instead of failing the load.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from backend.app.constants import DATA_VERSION, SCORE_HISTORY_MAX
from backend.app.models.dimensions import ActiveDimension

logger = logging.getLogger(__name__)


# --- Per-dimension score of one reply ---


@dataclass(frozen=True)
class Observed:
    """The dimension was visible in the reply and scored on the discrete scale."""
    value: float


@dataclass(frozen=True)
class NotApplicable:
    """The reply showed no behavior relevant to the dimension (no score, no penalty)."""


NOT_APPLICABLE = NotApplicable()

DimensionScore = Union[Observed, NotApplicable]


# --- Trend classification ---

TREND_DRIFTING = "drifting"
TREND_CORRECTING = "correcting"
TREND_STABLE = "stable"
TREND_INSUFFICIENT_DATA = "insufficient_data"
TREND_NO_DATA = "no_data"
TREND_ERROR = "error"
TRENDS_WITHOUT_EVIDENCE = (TREND_NO_DATA, TREND_INSUFFICIENT_DATA, TREND_ERROR)


class ScoreEntry(BaseModel):
    """Scores of one scored reply. A dimension missing from `scores` was not observable."""
    message_id: int
    timestamp: float
    scores: Dict[str, float] = Field(default_factory=dict)
    content_hash: str = ""
    reasoning: Optional[str] = None  # chain-of-thought text, never part of `scores`


class DimensionDrift(BaseModel):
    """Drift estimate for one dimension, recomputed every scoring cycle."""
    moving_avg: Optional[float] = None  # Kalman estimate
    deviation: Optional[float] = None  # |estimate - target|
    trend: str = TREND_NO_DATA
    correcting: bool = False  # CUSUM trigger
    severe: bool = False  # tighter CUSUM trigger
    cusum_value: float = 0.0
    uncertainty: float = 1.0  # 95% confidence half-width


# --- Correction controller ---


class CorrectionPhase(str, Enum):
    """Session-level controller states (Ceiling is tracked per dimension)."""
    IDLE = "idle"
    ACTIVE = "active"
    COOLDOWN = "cooldown"


class ActiveCorrection(BaseModel):
    """The single in-flight correction of a chat."""
    dimension_ids: List[str]
    injection_text: str
    since_message: int
    attempt: int = 1
    scores_since_correction: int = 0
    deviation_at_injection: float = 0.0


def _clean_history_entry(entry: Any) -> Optional[ScoreEntry]:
    """Validate one stored history entry; None when it cannot be used.

    Score values that are not finite numbers are dropped from the entry.
    """
    if not isinstance(entry, dict) or not isinstance(entry.get("scores"), dict):
        return None
    scores = {
        dim_id: value
        for dim_id, value in entry["scores"].items()
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
    }
    try:
        return ScoreEntry.model_validate({**entry, "scores": scores})
    except ValidationError:
        return None


class SessionState(BaseModel):
    """Everything the engine remembers about one chat."""
    data_version: str = DATA_VERSION
    dimensions: List[ActiveDimension] = Field(default_factory=list)
    calibration_hash: Optional[str] = None
    dimensions_manually_edited: bool = False
    score_history: List[ScoreEntry] = Field(default_factory=list)
    drift_state: Dict[str, DimensionDrift] = Field(default_factory=dict)

    phase: CorrectionPhase = CorrectionPhase.IDLE
    active_correction: Optional[ActiveCorrection] = None
    ceiling_dimensions: List[str] = Field(default_factory=list)
    ceiling_model: Optional[str] = None
    cooldown_remaining: int = 0
    recovery_cycles: int = 0

    messages_scored: int = 0
    corrections_injected: int = 0
    ever_corrected_dimensions: List[str] = Field(default_factory=list)
    ever_cusum_triggered: List[str] = Field(default_factory=list)
    ever_ma_triggered: List[str] = Field(default_factory=list)
    ma_consecutive_above: Dict[str, int] = Field(default_factory=dict)
    cusum_reset_after: Dict[str, int] = Field(default_factory=dict)  # dim -> message_id
    last_scored_message_id: Optional[int] = None

    baseline_text: Optional[str] = None
    report: Optional[Dict[str, Any]] = None

    @classmethod
    def from_stored(cls, data: dict[str, Any] | None) -> "SessionState":
        """Rebuild state from stored JSON, filtering malformed score-history entries."""
        if not data:
            return cls()
        raw = dict(data)
        history = raw.get("score_history")
        if isinstance(history, list):
            kept = [e for e in map(_clean_history_entry, history) if e is not None]
            if len(kept) < len(history):
                logger.warning("Filtered %d corrupt score history entries", len(history) - len(kept))
            raw["score_history"] = kept
        else:
            raw["score_history"] = []
        return cls.model_validate(raw)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    # --- history helpers ---

    def append_score(self, entry: ScoreEntry) -> None:
        """Append to history, evicting the oldest entries beyond the cap (FIFO)."""
        if len(self.score_history) >= SCORE_HISTORY_MAX:
            del self.score_history[: len(self.score_history) - SCORE_HISTORY_MAX + 1]
        self.score_history.append(entry)
        self.last_scored_message_id = entry.message_id

    def remove_score(self, message_id: int) -> bool:
        before = len(self.score_history)
        self.score_history = [e for e in self.score_history if e.message_id != message_id]
        return len(self.score_history) < before

    def is_scored(self, message_id: int) -> bool:
        return any(e.message_id == message_id for e in self.score_history)

    def dimension(self, dim_id: str) -> ActiveDimension | None:
        for d in self.dimensions:
            if d.id == dim_id:
                return d
        return None

    def label_for(self, dim_id: str) -> str:
        dim = self.dimension(dim_id)
        return dim.label if dim else dim_id

    def reset_scoring_data(self) -> None:
        """Wipe everything derived from scoring (used when the stored data version is stale)."""
        fresh = SessionState()
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))
