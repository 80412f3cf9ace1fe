"""Correction controller: the per-chat state machine that decides when to steer.

Session phases are Idle, Active (one correction record in flight) and Cooldown; Ceiling
is tracked per dimension. Each scoring cycle calls CorrectionMachine.step() once with the
freshly recomputed drift state.

Per cycle:
1. flag drifting dimensions (CUSUM trigger, then the moving-average fallback);
2. tick the cooldown, suppressing new corrections while it runs;
3. open, hold, escalate, retire or ceiling the active record;
4. release ceiling dimensions whose deviation fell back within threshold.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from backend.app.config import DriftSettings
from backend.app.constants import FLOAT_EPSILON, IMPROVED_MARGIN, WORSENED_MARGIN
from backend.app.core.correction import DriftingDimension, EscalationContext
from backend.app.core.drift_detector import apply_ma_fallback, post_correction_averages
from backend.app.core.warnings import LEVEL_ERROR, LEVEL_INFO, LEVEL_SUCCESS, LEVEL_WARNING, add_notice
from backend.app.models.state import (
    TREND_CORRECTING,
    TREND_DRIFTING,
    ActiveCorrection,
    CorrectionPhase,
    DimensionDrift,
    SessionState,
)

logger = logging.getLogger(__name__)

GenerateFn = Callable[[List[DriftingDimension], Optional[EscalationContext]], Awaitable[str]]

_UNCHANGED = object()


@dataclass
class StepResult:
    """What one step did. `injection` is the text to inject, None to clear, or unchanged."""

    notices: List[Dict[str, str]] = field(default_factory=list)
    injection: object = _UNCHANGED
    drifting: List[DriftingDimension] = field(default_factory=list)

    @property
    def injection_changed(self) -> bool:
        return self.injection is not _UNCHANGED


def _union(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    out = list(existing)
    for item in extra:
        if item not in out:
            out.append(item)
    return out


class CorrectionMachine:
    """Transitions of the correction controller over one chat's SessionState."""

    def __init__(self, state: SessionState, settings: DriftSettings, generate: GenerateFn, model_id: str = "unknown"):
        self.state = state
        self.settings = settings
        self.generate = generate
        self.model_id = model_id or "unknown"

    # --- helpers ---

    def _labels(self, dim_ids: Iterable[str]) -> str:
        return ", ".join(self.state.label_for(d) for d in dim_ids)

    @property
    def recovery_threshold(self) -> float:
        return self.settings.drift_threshold - self.settings.recovery_margin

    def flag_drifting(self, drift: Dict[str, DimensionDrift]) -> List[DriftingDimension]:
        """CUSUM-triggered dimensions outside the ceiling set, plus moving-average fallback hits."""
        state = self.state
        ceiling = set(state.ceiling_dimensions)
        drifting = [
            DriftingDimension(dim_id, d.deviation, d.moving_avg, d.trend, d.severe)
            for dim_id, d in drift.items()
            if d.correcting and dim_id not in ceiling
        ]
        cusum_ids = [d.dim_id for d in drifting]
        ma_ids = apply_ma_fallback(
            drift,
            state.ma_consecutive_above,
            self.settings.drift_threshold,
            excluded=ceiling | set(cusum_ids),
        )
        for dim_id in ma_ids:
            d = drift[dim_id]
            drifting.append(DriftingDimension(dim_id, d.deviation, d.moving_avg, d.trend, d.severe, ma_triggered=True))

        if cusum_ids:
            state.ever_cusum_triggered = _union(state.ever_cusum_triggered, cusum_ids)
        if ma_ids:
            state.ever_ma_triggered = _union(state.ever_ma_triggered, ma_ids)
        return drifting

    def mark_recovered(self, dim_ids: Sequence[str]) -> None:
        """Restart CUSUM evidence after the last scored message and zero the fallback counters."""
        state = self.state
        for dim_id in dim_ids:
            if state.last_scored_message_id is not None:
                state.cusum_reset_after[dim_id] = state.last_scored_message_id
            state.ma_consecutive_above[dim_id] = 0
            logger.info("CUSUM reset marker set for %s at message #%s", dim_id, state.last_scored_message_id)

    def _effective_deviation(self, dim_id: str, post_avgs: Dict[str, float | None], drift: Dict[str, DimensionDrift]):
        dim = self.state.dimension(dim_id)
        avg = post_avgs.get(dim_id)
        if avg is None and dim_id in drift:
            avg = drift[dim_id].moving_avg
        if avg is None or dim is None:
            return avg, None
        return avg, abs(avg - dim.target)

    # --- transitions ---

    async def open_record(self, targets: List[DriftingDimension], message_index: int, result: StepResult) -> None:
        """Idle -> Active: generate and inject a first correction for `targets`."""
        state = self.state
        text = await self.generate(targets, None)
        state.active_correction = ActiveCorrection(
            dimension_ids=[d.dim_id for d in targets],
            injection_text=text,
            since_message=message_index,
            attempt=1,
            scores_since_correction=0,
            deviation_at_injection=max((d.deviation or 0.0) for d in targets),
        )
        state.phase = CorrectionPhase.ACTIVE
        state.corrections_injected += 1
        state.ever_corrected_dimensions = _union(state.ever_corrected_dimensions, [d.dim_id for d in targets])
        result.injection = text

    async def escalate(
        self,
        record: ActiveCorrection,
        still_drifting: List[DriftingDimension],
        drifting: Sequence[DriftingDimension],
        current_worst: float,
        result: StepResult,
        message: str,
    ) -> None:
        """Active -> Active: regenerate a stronger correction for the corrected dimensions still off target."""
        by_id = {d.dim_id: d for d in drifting}
        targets = [by_id.get(d.dim_id, d) for d in still_drifting]
        escalation = EscalationContext(
            previous_text=record.injection_text,
            deviation_at_correction=record.deviation_at_injection,
            deviation_after=current_worst,
            attempt=record.attempt,
            patience=self.settings.correction_patience,
        )
        text = await self.generate(targets, escalation)
        record.injection_text = text
        record.attempt += 1
        record.scores_since_correction = 0
        record.deviation_at_injection = current_worst
        self.state.corrections_injected += 1
        result.injection = text
        add_notice(result, message.format(attempt=record.attempt), LEVEL_WARNING)

    def clear_record(self, result: StepResult, cooldown: int = 0) -> None:
        state = self.state
        state.active_correction = None
        state.cooldown_remaining = cooldown
        state.phase = CorrectionPhase.COOLDOWN if cooldown > 0 else CorrectionPhase.IDLE
        result.injection = None

    async def enter_ceiling(
        self,
        record: ActiveCorrection,
        drifting: Sequence[DriftingDimension],
        message_index: int,
        result: StepResult,
    ) -> None:
        """Attempts exhausted: park the corrected dimensions at their ceiling for this model."""
        state = self.state
        corrected = list(record.dimension_ids)
        state.ceiling_dimensions = _union(state.ceiling_dimensions, corrected)
        state.ceiling_model = self.model_id
        add_notice(
            result,
            f"{self._labels(corrected)} may be at their ceiling for this model. Consider manual intervention.",
            LEVEL_ERROR,
        )
        remaining = [d for d in drifting if d.dim_id not in corrected]
        if remaining:
            await self.open_record(remaining, message_index, result)
        else:
            self.clear_record(result)

    async def evaluate_active(
        self,
        record: ActiveCorrection,
        drifting: List[DriftingDimension],
        drift: Dict[str, DimensionDrift],
        scored_ids: set[str],
        message_index: int,
        result: StepResult,
    ) -> None:
        """Active record while something is drifting: wait out patience, then judge the correction."""
        state = self.state
        settings = self.settings
        if any(dim_id in scored_ids for dim_id in record.dimension_ids):
            record.scores_since_correction += 1
        if record.scores_since_correction < settings.correction_patience:
            return

        post_avgs = post_correction_averages(record.dimension_ids, state.score_history, record.since_message)
        still_drifting: List[DriftingDimension] = []
        for dim_id in record.dimension_ids:
            avg, dev = self._effective_deviation(dim_id, post_avgs, drift)
            if dev is None or dev > self.recovery_threshold:
                still_drifting.append(DriftingDimension(dim_id, dev, avg))

        if not still_drifting:
            self.mark_recovered(record.dimension_ids)
            remaining = [d for d in drifting if d.dim_id not in record.dimension_ids]
            self.clear_record(result)
            if remaining:
                await self.open_record(remaining, message_index, result)
                add_notice(result, "Previous correction worked. New correction for remaining dimensions.", LEVEL_SUCCESS)
            else:
                self.clear_record(result, cooldown=settings.correction_cooldown)
                add_notice(result, "Dimensions stabilized", LEVEL_SUCCESS)
            return

        current_worst = max((d.deviation or 0.0) for d in still_drifting)
        worsened = current_worst > record.deviation_at_injection + WORSENED_MARGIN
        improved = current_worst < record.deviation_at_injection - IMPROVED_MARGIN
        trends = [drift[dim_id].trend for dim_id in record.dimension_ids if dim_id in drift]
        all_recovering = bool(trends) and all(t == TREND_CORRECTING for t in trends)
        any_worsening = any(t == TREND_DRIFTING for t in trends)
        can_escalate = record.attempt < settings.correction_max_attempts

        if all_recovering:
            logger.info("All corrected dimensions recovering; resetting patience instead of escalating")
            self._hold(record, current_worst)
        elif worsened and can_escalate:
            await self.escalate(
                record, still_drifting, drifting, current_worst, result,
                "Deviation worsening, correction regenerated (attempt {attempt})",
            )
        elif improved:
            self._hold(record, current_worst)
        elif not any_worsening:
            logger.info("Stagnant but no corrected dimension worsening; resetting patience")
            self._hold(record, current_worst)
        elif can_escalate:
            await self.escalate(
                record, still_drifting, drifting, current_worst, result,
                "Correction regenerated (attempt {attempt})",
            )
        else:
            await self.enter_ceiling(record, drifting, message_index, result)

    @staticmethod
    def _hold(record: ActiveCorrection, current_worst: float) -> None:
        record.scores_since_correction = 0
        record.deviation_at_injection = current_worst

    def confirm_recovery(self, record: ActiveCorrection, drift: Dict[str, DimensionDrift], result: StepResult) -> None:
        """Active record with nothing drifting: retire it after enough consecutive in-tolerance cycles."""
        state = self.state
        post_avgs = post_correction_averages(record.dimension_ids, state.score_history, record.since_message)
        within = True
        for dim_id in record.dimension_ids:
            _, dev = self._effective_deviation(dim_id, post_avgs, drift)
            if dev is None or dev > self.recovery_threshold + FLOAT_EPSILON:
                within = False
                break

        if not within:
            state.recovery_cycles = 0
            return
        state.recovery_cycles += 1
        needed = self.settings.recovery_patience
        if state.recovery_cycles < needed:
            logger.info("Recovery cycle %d/%d; waiting for confirmation", state.recovery_cycles, needed)
            return
        self.mark_recovered(record.dimension_ids)
        self.clear_record(result, cooldown=self.settings.correction_cooldown)
        state.recovery_cycles = 0
        add_notice(result, "Dimensions stabilized", LEVEL_SUCCESS)

    def tick_cooldown(self, drifting: Sequence[DriftingDimension]) -> bool:
        """Decrement the cooldown once per cycle. True when this cycle's drift must be ignored."""
        state = self.state
        if state.cooldown_remaining <= 0:
            return False
        state.cooldown_remaining -= 1
        if state.cooldown_remaining == 0 and state.active_correction is None:
            state.phase = CorrectionPhase.IDLE
        if drifting:
            logger.info("Cooldown active (%d left); correction suppressed", state.cooldown_remaining)
            return True
        return False

    def release_ceilings(self, drift: Dict[str, DimensionDrift], result: StepResult) -> None:
        """Drop dimensions from the ceiling set once their deviation is back within threshold."""
        state = self.state
        limit = self.settings.drift_threshold + FLOAT_EPSILON
        recovered = [
            dim_id
            for dim_id in state.ceiling_dimensions
            if dim_id in drift and drift[dim_id].deviation is not None and drift[dim_id].deviation <= limit
        ]
        if not recovered:
            return
        state.ceiling_dimensions = [d for d in state.ceiling_dimensions if d not in recovered]
        add_notice(result, f"{self._labels(recovered)} recovered within tolerance. Auto-correction re-enabled.", LEVEL_INFO)

    # --- entry point ---

    async def step(self, drift: Dict[str, DimensionDrift], scored_ids: set[str], message_index: int) -> StepResult:
        result = StepResult()
        state = self.state
        drifting = self.flag_drifting(drift)
        result.drifting = drifting

        if not self.tick_cooldown(drifting):
            record = state.active_correction
            if drifting:
                if record is None:
                    await self.open_record(drifting, message_index, result)
                    labels = self._labels(d.dim_id for d in drifting)
                    if any(d.severe for d in drifting):
                        add_notice(result, f"Severe drift: {labels}", LEVEL_ERROR)
                    else:
                        add_notice(result, f"Drift detected: {labels}", LEVEL_WARNING)
                else:
                    await self.evaluate_active(record, drifting, drift, scored_ids, message_index, result)
            elif record is not None:
                self.confirm_recovery(record, drift, result)

        self.release_ceilings(drift, result)
        return result
