"""Dimension models: immutable catalog entries and per-character calibrated dimensions."""
from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class Dimension(BaseModel):
    """One bipolar behavioral spectrum with a 5-level rubric (keys '0.0'..'1.0')."""
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    low_label: str
    high_label: str
    description: str = ""
    scoring_guidance: str = ""
    ai_default: float = 0.5  # position an unconditioned assistant drifts toward
    rubric: Dict[str, str] = Field(default_factory=dict)


class ActiveDimension(Dimension):
    """A catalog dimension calibrated for one character."""

    target: float = Field(default=0.5, ge=0.0, le=1.0)
    context: str = ""  # how this character expresses its position on the spectrum
