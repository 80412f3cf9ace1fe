"""App config: typed drift-monitor settings, explicit merge-with-defaults, env overrides.

Load order (later wins): built-in defaults <- YAML settings file <- raw dict <- env.
Per-field env overrides use DRIFTGUARD_{FIELD} (e.g. DRIFTGUARD_DRIFT_THRESHOLD=0.25).
A field that fails validation keeps its default and is logged; unknown keys are ignored.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shared.config import DB_PATH, EXPORT_DIR, SETTINGS_FILE

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = DB_PATH
DEFAULT_EXPORT_DIR = EXPORT_DIR

AnalysisBackendName = Literal["openai", "claude_code"]


class DriftSettings(BaseModel):
    """Every tunable of the drift monitor, with its default."""
    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    # Master switch
    enabled: bool = True

    # Analysis backend
    analysis_backend: AnalysisBackendName = "claude_code"
    openai_endpoint: str = ""
    openai_api_key: str = ""
    openai_model: str = ""
    claude_code_model: str = "sonnet"

    # Scoring
    score_frequency: int = Field(default=3, ge=1)
    score_on_first: bool = True

    # Drift detection
    drift_window: int = Field(default=8, ge=2)
    drift_threshold: float = Field(default=0.20, gt=0.0, le=1.0)  # max allowed deviation from target
    drift_alert_threshold: float = Field(default=0.35, gt=0.0, le=1.0)  # severe deviation

    # Correction
    correction_enabled: bool = True
    correction_depth: int = Field(default=4, ge=0)
    correction_max_dimensions: int = Field(default=3, ge=1)
    correction_patience: int = Field(default=2, ge=1)
    correction_max_attempts: int = Field(default=2, ge=1)
    correction_cooldown: int = Field(default=2, ge=0)
    recovery_margin: float = Field(default=0.05, ge=0.0, le=1.0)
    recovery_patience: int = Field(default=2, ge=1)

    # Baseline anchor
    baseline_enabled: bool = True
    baseline_depth: int = Field(default=6, ge=0)

    @field_validator("openai_endpoint")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @field_validator("analysis_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, v: Any) -> Any:
        if isinstance(v, str):
            low = v.strip().lower()
            return "openai" if low == "openai_compat" else low
        return v

    def public_dict(self) -> dict[str, Any]:
        """Settings as a dict with the API key masked (safe for logs and API output)."""
        data = self.model_dump()
        if data.get("openai_api_key"):
            data["openai_api_key"] = "***"
        return data


_FIELD_NAMES = tuple(DriftSettings.model_fields)


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    # Allow the settings to be nested under a top-level 'driftguard' key
    nested = data.get("driftguard")
    return dict(nested) if isinstance(nested, dict) else data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for name in _FIELD_NAMES:
        val = environ.get(f"DRIFTGUARD_{name.upper()}", "").strip()
        if val:
            out[name] = val
    return out


def merge_with_defaults(raw: Mapping[str, Any] | None) -> DriftSettings:
    """Build settings from a partial mapping; every missing or invalid field keeps its default."""
    settings = DriftSettings()
    if not raw:
        return settings
    for key, value in raw.items():
        if key not in _FIELD_NAMES:
            logger.warning("Ignoring unknown setting %r", key)
            continue
        try:
            setattr(settings, key, value)
        except ValidationError as e:
            logger.warning(
                "Invalid value for setting %s=%r, keeping default %r: %s",
                key,
                value,
                getattr(settings, key),
                e.errors()[0].get("msg", e),
            )
    return settings


def load_settings(
    raw: Mapping[str, Any] | None = None,
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> DriftSettings:
    """Resolve settings: defaults <- YAML file <- raw mapping <- DRIFTGUARD_* env overrides."""
    env = os.environ if environ is None else environ
    merged: dict[str, Any] = {}

    if path is None:
        path = env.get("DRIFTGUARD_SETTINGS_FILE", "").strip() or SETTINGS_FILE
    settings_path = path or None
    if settings_path:
        p = Path(settings_path)
        if p.is_file():
            merged.update(_load_yaml(p))
        else:
            logger.warning("Settings file not found: %s (using defaults)", p)
    if raw:
        merged.update(raw)
    merged.update(_env_overrides(env))

    settings = merge_with_defaults(merged)
    logger.debug("Resolved settings: %s", settings.public_dict())
    return settings
