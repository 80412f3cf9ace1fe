"""Centralized tuning constants shared across the engine."""
from __future__ import annotations

APP_NAME = "DriftGuard"
APP_VERSION = "0.5.0"

# Version stamp on persisted session state; a mismatch wipes scoring data on load
DATA_VERSION = "0.5.0"

# Discrete rubric levels every score is snapped to
DISCRETE_SCALE: tuple[float, ...] = (0.0, 0.25, 0.5, 0.75, 1.0)

# Score history
SCORE_HISTORY_MAX = 200
UNSCORED_WARNING_CYCLES = 3

# Scoring pipeline
SCORING_CHUNK_SIZE = 4
SCORING_CONTEXT_TURNS = 6
RESPONSE_MAX_CHARS = 1500
RESPONSE_HEAD_CHARS = 800
RESPONSE_TAIL_CHARS = 700
CONTEXT_TURN_MAX_CHARS = 500
CONTEXT_TURN_HEAD_CHARS = 300
CONTEXT_TURN_TAIL_CHARS = 200
CONTENT_HASH_CHARS = 200

# Calibration
CALIBRATION_CONTEXT_MAX_CHARS = 500
CALIBRATION_DEFAULT_TARGET = 0.5

# Drift detection
MIN_SCORES_FOR_CORRECTION = 2
TREND_HYSTERESIS = 0.03
KALMAN_OBSERVATION_VARIANCE = 0.04
KALMAN_PROCESS_VARIANCE = 0.005
KALMAN_CI_Z = 1.96
KALMAN_FALLBACK_UNCERTAINTY = 0.5
CUSUM_MIN_ALLOWANCE = 0.125
CUSUM_DECISION_MULTIPLIER = 0.8
CUSUM_SEVERE_MULTIPLIER = 0.5
CUSUM_EPSILON = 1e-6
MA_CONSECUTIVE_REQUIRED = 3

# Correction controller
FLOAT_EPSILON = 0.001
WORSENED_MARGIN = 0.05
IMPROVED_MARGIN = 0.02
INTENSITY_SUBTLE_RATIO = 1.3
INTENSITY_MODERATE_RATIO = 1.8
CORRECTION_CONTEXT_TURNS = 6
CORRECTION_CONTEXT_CHARS = 300

# Baseline anchor
BASELINE_DEVIATION_FLAG = 0.2

# Reports
MIN_SCORES_FOR_VERDICT = 2
MIN_SCORES_FOR_DEVIATION_VERDICT = 5
RESILIENCE_INITIAL_MESSAGES = 3
RESILIENCE_WINDOW_MAX = 20
REPORT_INDEX_MAX = 100
EXPORT_VERSION = "1.0"

# Prompt sanitization
PROMPT_TEXT_MAX_CHARS = 15000

# Analysis backends
OPENAI_TEMPERATURE = 0.1
OPENAI_HTTP_TIMEOUT_SECONDS = 60.0
OPENAI_MAX_RETRIES = 3
OPENAI_BACKOFF_BASE_SECONDS = 1.0
OPENAI_BACKOFF_MAX_SECONDS = 8.0
CLI_DEFAULT_TIMEOUT_SECONDS = 120.0
CLI_TIMEOUT_PER_TOKEN_SECONDS = 0.2
CLI_KILL_GRACE_SECONDS = 5.0
BACKEND_PROBE_TTL_SECONDS = 300.0

# Token budgets per call kind
CALIBRATION_MAX_TOKENS = 4000
SCORING_MAX_TOKENS = 4000
CORRECTION_MAX_TOKENS = 2000
BASELINE_MAX_TOKENS = 2000
INSIGHTS_MAX_TOKENS = 4000
