"""Session report: three 0-100 scores, per-dimension verdicts, insights, export documents.

Scores:
- Card Resilience: how well the profile holds its targets without help
  (initial accuracy 40, time within tolerance 50, correction penalty 10).
- Session Quality: closeness to targets over the whole session
  (accuracy 40, consistency 30, worst-dimension floor 30), scaled by dimension coverage.
- Model Compatibility: how well the model carries this profile
  (dimensions never ceilinged 35, correction load 25, end-state health 40).
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from backend.app.constants import (
    APP_NAME,
    APP_VERSION,
    EXPORT_VERSION,
    INSIGHTS_MAX_TOKENS,
    MIN_SCORES_FOR_DEVIATION_VERDICT,
    MIN_SCORES_FOR_VERDICT,
    REPORT_INDEX_MAX,
    RESILIENCE_INITIAL_MESSAGES,
    RESILIENCE_WINDOW_MAX,
)
from backend.app.core.analysis import Analyzer
from backend.app.core.drift_detector import mean, population_variance
from backend.app.core.text_utils import sanitize_for_prompt, slugify
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import CharacterProfile, hash_text
from backend.app.models.report import (
    SCORE_LABELS,
    VERDICT_CEILING,
    VERDICT_CORRECTABLE,
    VERDICT_DRIFTING,
    VERDICT_INSUFFICIENT_DATA,
    VERDICT_MAINTAINABLE,
    VERDICT_NATURAL_FIT,
    VERDICT_VOLATILE,
    ReportComparison,
    ReportIndexEntry,
    ScoreDelta,
    SessionReport,
)
from backend.app.models.state import DimensionDrift, ScoreEntry, SessionState
from backend.app.prompts.registry import render_prompt

logger = logging.getLogger(__name__)

REPORT_INDEX_KEY = "report_index"
INSIGHTS_SYSTEM_PROMPT = "You are a character roleplay analyst. Provide actionable insights."


def _scores(history: Sequence[ScoreEntry], dim_id: str) -> List[float]:
    return [e.scores[dim_id] for e in history if dim_id in e.scores]


def _end_deviations(drift_state: Mapping[str, DimensionDrift]) -> List[float]:
    return [d.deviation if d.deviation is not None else 0.0 for d in drift_state.values()]


def compute_card_resilience(
    history: Sequence[ScoreEntry],
    dimensions: Sequence[ActiveDimension],
    corrections_count: int,
    threshold: float,
) -> int:
    if not history:
        return 0
    early = history[:RESILIENCE_INITIAL_MESSAGES]
    initial_devs = []
    for dim in dimensions:
        scores = _scores(early, dim.id)
        if scores:
            initial_devs.append(mean([abs(s - dim.target) for s in scores]))
    initial = max(0.0, 1 - mean(initial_devs)) if initial_devs else 0.5

    # Fixed reference window so long chats are not favoured
    window = history[: min(len(history), RESILIENCE_WINDOW_MAX)]
    scored_dims = [d for d in dimensions if _scores(window, d.id)]
    resistance = []
    mean_devs = []
    for dim in scored_dims:
        scores = _scores(window, dim.id)
        resistance.append(sum(1 for s in scores if abs(s - dim.target) <= threshold) / len(scores))
        mean_devs.append(abs(mean(scores) - dim.target))
    if not resistance:
        resistance = [0.5]
    overall_mean_dev = mean(mean_devs) if mean_devs else 0.0
    deviation_factor = max(0.5, 1 - overall_mean_dev * 1.5)
    penalty = 0.85 if corrections_count > 0 else 1.0
    return round(initial * 40 + mean(resistance) * deviation_factor * 50 + penalty * 10)


def compute_session_quality(
    history: Sequence[ScoreEntry],
    dimensions: Sequence[ActiveDimension],
    drift_state: Mapping[str, DimensionDrift],
) -> int:
    if not history:
        return 0
    deviations = [
        abs(entry.scores[dim.id] - dim.target)
        for entry in history
        for dim in dimensions
        if dim.id in entry.scores
    ]
    accuracy = max(0.0, 1 - mean(deviations)) if deviations else 0.5
    variance = population_variance(deviations)
    consistency = max(0.0, 1 - variance * 2) if variance is not None else 0.5

    end_devs = _end_deviations(drift_state)
    floor_factor = max(0.5, 1 - (max(end_devs) if end_devs else 0.0))

    with_data = sum(1 for d in dimensions if _scores(history, d.id))
    coverage = with_data / len(dimensions) if dimensions else 1.0
    # Sparse sessions are capped, not zeroed
    coverage_factor = max(0.6, coverage)
    return round((accuracy * 40 + consistency * 30 + floor_factor * 30) * coverage_factor)


def compute_model_compatibility(
    dimensions: Sequence[ActiveDimension],
    ceiling_dimensions: Sequence[str],
    corrections_count: int,
    history: Sequence[ScoreEntry],
    drift_state: Mapping[str, DimensionDrift],
    threshold: float,
) -> int:
    if not history:
        return 0
    ceiling_ratio = 1 - len(ceiling_dimensions) / len(dimensions) if dimensions else 1.0

    load = max(0.0, 1 - corrections_count / (len(history) * 0.5 or 1))
    end_devs = _end_deviations(drift_state)
    if corrections_count == 0 and len(history) >= MIN_SCORES_FOR_DEVIATION_VERDICT:
        # Drift nobody corrected still counts against the model
        above = sum(1 for d in end_devs if d > threshold)
        if above and dimensions:
            load = max(0.0, load - (above / len(dimensions)) * 0.5)

    end_health = max(0.0, 1 - mean(end_devs)) if end_devs else 0.5
    return round(ceiling_ratio * 35 + load * 25 + end_health * 40)


def dimension_verdict(dim: ActiveDimension, state: SessionState, threshold: float) -> str:
    if dim.id in state.ceiling_dimensions:
        return VERDICT_CEILING
    scores = _scores(state.score_history, dim.id)
    if len(scores) < MIN_SCORES_FOR_VERDICT:
        return VERDICT_INSUFFICIENT_DATA

    ever_drifted = dim.id in state.ever_cusum_triggered or dim.id in state.ever_ma_triggered
    if not ever_drifted:
        # Clear drift the triggers never caught is not a natural fit
        if len(scores) >= MIN_SCORES_FOR_DEVIATION_VERDICT and abs(mean(scores) - dim.target) > threshold:
            return VERDICT_VOLATILE
        return VERDICT_NATURAL_FIT

    corrected = dim.id in state.ever_corrected_dimensions
    d = state.drift_state.get(dim.id)
    if d is not None and d.deviation is not None and d.deviation <= threshold:
        return VERDICT_CORRECTABLE if corrected else VERDICT_MAINTAINABLE
    return VERDICT_DRIFTING if corrected else VERDICT_VOLATILE


def build_dimension_breakdown(
    dimensions: Sequence[ActiveDimension],
    verdicts: Mapping[str, str],
    curves: Mapping[str, List[float]],
) -> str:
    lines = []
    for d in dimensions:
        curve = curves.get(d.id, [])
        avg = f"{mean(curve):.2f}" if curve else "?"
        desc = f" ({d.description})" if d.description else ""
        ctx = f' context="{d.context}"' if d.context else ""
        points = ", ".join(f"{s:.2f}" for s in curve)
        lines.append(
            f"- {d.label}{desc}: target={d.target:.2f}, verdict={verdicts.get(d.id)}, mean_score={avg},{ctx} curve=[{points}]"
        )
    return "\n".join(lines)


async def generate_insights(
    analyzer: Analyzer,
    report: SessionReport,
    dimensions: Sequence[ActiveDimension],
) -> str:
    """One prose call; a failure becomes a short note instead of an error."""
    prompt = render_prompt(
        "report_insights",
        char_name=sanitize_for_prompt(report.card_name),
        model_name=sanitize_for_prompt(report.model_id),
        card_score=report.card_resilience,
        session_score=report.session_quality,
        model_score=report.model_compatibility,
        dimension_breakdown=build_dimension_breakdown(dimensions, report.dimension_verdicts, report.dimension_curves),
        correction_history=f"{report.corrections_count} corrections applied",
    )
    try:
        result = await analyzer.analyze(
            [
                {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=INSIGHTS_MAX_TOKENS,
            expect_json=False,
        )
    except Exception as e:
        logger.error("Failed to generate insights: %s", e)
        return f"(Insight generation failed: {e})"
    return result if isinstance(result, str) else str(result)


async def generate_report(
    analyzer: Analyzer | None,
    state: SessionState,
    card_name: str,
    model_id: str,
    messages_total: int,
    threshold: float,
) -> SessionReport:
    """Score the session and (when an analyzer is given) attach model-written insights."""
    history = state.score_history
    verdicts = {d.id: dimension_verdict(d, state, threshold) for d in state.dimensions}
    curves = {d.id: _scores(history, d.id) for d in state.dimensions}
    report = SessionReport(
        generated_at=time.time(),
        card_name=card_name or "Unknown",
        model_id=model_id or "Unknown model",
        messages_total=messages_total,
        messages_scored=state.messages_scored,
        card_resilience=compute_card_resilience(history, state.dimensions, state.corrections_injected, threshold),
        session_quality=compute_session_quality(history, state.dimensions, state.drift_state),
        model_compatibility=compute_model_compatibility(
            state.dimensions,
            state.ceiling_dimensions,
            state.corrections_injected,
            history,
            state.drift_state,
            threshold,
        ),
        dimension_verdicts=verdicts,
        dimension_curves=curves,
        corrections_count=state.corrections_injected,
        ceiling_dimensions=list(state.ceiling_dimensions),
    )
    if analyzer is not None and history:
        report.insights = await generate_insights(analyzer, report, state.dimensions)
    logger.info(
        "Report generated for %s: %s",
        report.card_name,
        dict(zip(SCORE_LABELS, report.scores)),
    )
    return report


# --- Cross-session index ---


def _iso_date(epoch_seconds: float | None = None) -> str:
    ts = time.time() if epoch_seconds is None else epoch_seconds
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def index_entry(chat_id: str, report: SessionReport, dimension_ids: Sequence[str]) -> ReportIndexEntry:
    return ReportIndexEntry(
        chat_id=chat_id,
        card_name=report.card_name,
        model=report.model_id,
        scores=report.scores,
        dimension_ids=list(dimension_ids),
        date=_iso_date(report.generated_at),
    )


def load_report_index(settings_store) -> List[ReportIndexEntry]:
    raw = settings_store.get(REPORT_INDEX_KEY) or []
    out = []
    for item in raw if isinstance(raw, list) else []:
        try:
            out.append(ReportIndexEntry.model_validate(item))
        except ValueError as e:
            logger.warning("Skipping unreadable report index entry: %s", e)
    return out


def append_report_index(settings_store, entry: ReportIndexEntry) -> List[ReportIndexEntry]:
    """Append to the index kept in the settings store, evicting the oldest beyond the cap."""
    index = load_report_index(settings_store)
    index.append(entry)
    if len(index) > REPORT_INDEX_MAX:
        index = index[len(index) - REPORT_INDEX_MAX :]
    settings_store.set(REPORT_INDEX_KEY, [e.model_dump(mode="json") for e in index])
    return index


# --- Export ---


def build_report_export(
    state: SessionState,
    report: SessionReport,
    profile: CharacterProfile | None,
) -> Dict[str, Any]:
    """Self-contained export document for one session."""
    profile_text = profile.full_text() if profile else ""
    history = state.score_history
    dims = []
    for d in state.dimensions:
        curve = report.dimension_curves.get(d.id, [])
        dims.append(
            {
                "id": d.id,
                "label": d.label,
                "low_label": d.low_label,
                "high_label": d.high_label,
                "target": d.target,
                "context": d.context,
                "verdict": report.dimension_verdicts.get(d.id),
                "initial_score": history[0].scores.get(d.id) if history else None,
                "final_score": history[-1].scores.get(d.id) if history else None,
                "mean_score": mean(curve) if curve else None,
                "score_curve": curve,
            }
        )
    return {
        "export_version": EXPORT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "extension": f"{APP_NAME} v{APP_VERSION}",
        "card_name": report.card_name,
        "card_description_hash": hash_text(profile_text),
        "model_id": report.model_id,
        "session_date": _iso_date(report.generated_at),
        "messages_total": report.messages_total,
        "messages_scored": report.messages_scored,
        "card_resilience": report.card_resilience,
        "session_quality": report.session_quality,
        "model_compatibility": report.model_compatibility,
        "dimensions": dims,
        "corrections_count": report.corrections_count,
        "ceiling_dimensions": report.ceiling_dimensions,
        "insights": report.insights,
        "score_history": [e.model_dump(mode="json") for e in history],
        "card_description": profile_text,
    }


def report_filename(card_name: str, date: str | None = None) -> str:
    return f"driftguard_report_{slugify(card_name or 'unknown') or 'unknown'}_{date or _iso_date()}.json"


def all_reports_filename(date: str | None = None) -> str:
    return f"driftguard_reports_all_{date or _iso_date()}.json"


def write_json(data: Any, directory: str | Path, filename: str) -> Path:
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / filename
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Wrote %s", path)
    return path


def export_report(state: SessionState, profile: CharacterProfile | None, directory: str | Path) -> Optional[Path]:
    """Write the stored report of this session to a JSON file; None when no report exists."""
    if not state.report:
        logger.warning("No report generated yet; nothing to export")
        return None
    report = SessionReport.model_validate(state.report)
    return write_json(build_report_export(state, report, profile), directory, report_filename(report.card_name))


def export_all_reports(settings_store, directory: str | Path) -> Optional[Path]:
    """Write the cross-session index to a JSON file; None when the index is empty."""
    index = load_report_index(settings_store)
    if not index:
        logger.warning("No reports in the index")
        return None
    return write_json([e.model_dump(mode="json") for e in index], directory, all_reports_filename())


def compare_reports(before: SessionReport | ReportIndexEntry, after: SessionReport | ReportIndexEntry) -> ReportComparison:
    """Per-score deltas (after - before), e.g. before and after a profile revision."""
    deltas = [
        ScoreDelta(label=label, before=b, after=a, delta=a - b)
        for label, b, a in zip(SCORE_LABELS, before.scores, after.scores)
    ]
    return ReportComparison(
        before_card=before.card_name,
        after_card=after.card_name,
        deltas=deltas,
    )
