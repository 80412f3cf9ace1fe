"""Core drift engine: scoring, drift detection, correction state machine, and per-chat control."""
from .drift_detector import compute_drift_state, cusum, kalman_filter

__all__ = [
    "compute_drift_state",
    "cusum",
    "kalman_filter",
]
