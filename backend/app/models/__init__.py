"""Application models (dimensions, session state, host events, reports)."""
from .dimensions import ActiveDimension, Dimension
from .events import (
    AuthorKind,
    CharacterProfile,
    ChatChanged,
    HostEvent,
    Turn,
    TurnRendered,
    TurnSwiped,
)
from .report import ReportIndexEntry, SessionReport
from .state import (
    NOT_APPLICABLE,
    ActiveCorrection,
    CorrectionPhase,
    DimensionDrift,
    DimensionScore,
    NotApplicable,
    Observed,
    ScoreEntry,
    SessionState,
)

__all__ = [
    "ActiveDimension",
    "Dimension",
    "AuthorKind",
    "CharacterProfile",
    "ChatChanged",
    "HostEvent",
    "Turn",
    "TurnRendered",
    "TurnSwiped",
    "ReportIndexEntry",
    "SessionReport",
    "NOT_APPLICABLE",
    "ActiveCorrection",
    "CorrectionPhase",
    "DimensionDrift",
    "DimensionScore",
    "NotApplicable",
    "Observed",
    "ScoreEntry",
    "SessionState",
]
