"""Session report, cross-session index entry, and report comparison models."""
from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

VERDICT_CEILING = "ceiling"
VERDICT_NATURAL_FIT = "natural_fit"
VERDICT_MAINTAINABLE = "maintainable"
VERDICT_CORRECTABLE = "correctable"
VERDICT_DRIFTING = "drifting"
VERDICT_VOLATILE = "volatile"
VERDICT_INSUFFICIENT_DATA = "insufficient_data"

SCORE_LABELS = ("Card Resilience", "Session Quality", "Model Compatibility")


class SessionReport(BaseModel):
    generated_at: float
    card_name: str
    model_id: str
    messages_total: int = 0
    messages_scored: int = 0
    card_resilience: int = 0
    session_quality: int = 0
    model_compatibility: int = 0
    dimension_verdicts: Dict[str, str] = Field(default_factory=dict)
    dimension_curves: Dict[str, List[float]] = Field(default_factory=dict)
    corrections_count: int = 0
    ceiling_dimensions: List[str] = Field(default_factory=list)
    insights: str = ""

    @property
    def scores(self) -> list[int]:
        return [self.card_resilience, self.session_quality, self.model_compatibility]


class ReportIndexEntry(BaseModel):
    """One line of the cross-session report index."""
    chat_id: str
    card_name: str
    model: str
    scores: List[int]
    dimension_ids: List[str] = Field(default_factory=list)
    date: str


class ScoreDelta(BaseModel):
    label: str
    before: int
    after: int
    delta: int


class ReportComparison(BaseModel):
    before_card: str
    after_card: str
    deltas: List[ScoreDelta]
