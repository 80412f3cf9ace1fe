"""Per-chat scheduler: single-flight scoring cycles, queueing, swipes and chat lifecycle.

One ChatController owns one chat's SessionState. Scoring is single-flight per controller:
a request that arrives while a cycle is in flight is queued (deduplicated, FIFO) and
drained once the cycle settles, after re-checking that the queued index is still a live
assistant turn. Every async step captures the controller's load epoch; a chat reload
bumps the epoch and stale results are dropped instead of written back.

DriftService keeps one controller per chat id and routes host events to them.
"""
from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from backend.app.config import DriftSettings
from backend.app.constants import CONTENT_HASH_CHARS, DATA_VERSION, UNSCORED_WARNING_CYCLES
from backend.app.core.analysis import Analyzer
from backend.app.core.baseline import generate_baseline
from backend.app.core.calibration import CalibrationStore, calibrate_dimensions
from backend.app.core.correction import (
    BASELINE_KEY,
    CORRECTION_KEY,
    DriftingDimension,
    EscalationContext,
    generate_correction,
    injection_depth,
)
from backend.app.core.correction_fsm import CorrectionMachine
from backend.app.core.drift_detector import compute_drift_state
from backend.app.core.error_handling import log_error_with_context
from backend.app.core.host import POSITION_IN_PROMPT, ROLE_SYSTEM, ChatHost, ChatMetadataStore, KeyValueStore
from backend.app.core.report import append_report_index, generate_report, index_entry
from backend.app.core.scoring import build_recent_context, is_greeting, score_response, should_score
from backend.app.core.text_utils import is_ooc_text
from backend.app.core.warnings import LEVEL_INFO, LEVEL_SUCCESS, LEVEL_WARNING, add_notice
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import (
    CharacterProfile,
    ChatChanged,
    HostEvent,
    Turn,
    TurnRendered,
    TurnSwiped,
    hash_text,
)
from backend.app.models.report import SessionReport
from backend.app.models.state import CorrectionPhase, ScoreEntry, SessionState

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one scoring cycle (or lifecycle step), with the notices to show the user."""

    message_index: Optional[int] = None
    scored: bool = False
    skipped: Optional[str] = None
    notices: List[Dict[str, str]] = field(default_factory=list)
    drifting: List[str] = field(default_factory=list)
    queued_results: List["CycleResult"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_index": self.message_index,
            "scored": self.scored,
            "skipped": self.skipped,
            "notices": list(self.notices),
            "drifting": list(self.drifting),
            "queued_results": [r.to_dict() for r in self.queued_results],
        }


def _turn_at(turns: List[Turn], index: int) -> Optional[Turn]:
    for t in turns:
        if t.index == index:
            return t
    return None


class ChatController:
    """Scoring, drift detection and correction for one chat."""

    def __init__(
        self,
        chat_id: str,
        host: ChatHost,
        settings: DriftSettings,
        analyzer: Analyzer,
        metadata_store: ChatMetadataStore,
        settings_store: KeyValueStore,
        rng: random.Random | None = None,
    ):
        self.chat_id = chat_id
        self.host = host
        self.settings = settings
        self.analyzer = analyzer
        self.metadata_store = metadata_store
        self.settings_store = settings_store
        self.calibrations = CalibrationStore(settings_store)
        self.rng = rng
        self.busy = False
        self.queue: Deque[Tuple[int, bool]] = deque()
        self.pending_rescores: set[int] = set()
        self._epoch = 0
        self._state: Optional[SessionState] = None

    # --- state ---

    @property
    def state(self) -> SessionState:
        if self._state is None:
            self._state = SessionState.from_stored(self.metadata_store.load(self.chat_id))
        return self._state

    def save(self, state: SessionState | None = None) -> None:
        state = state or self.state
        if state is not self._state:
            logger.info("Discarding stale state write for chat %s", self.chat_id)
            return
        self.metadata_store.save(self.chat_id, state.to_stored())

    def invalidate(self) -> None:
        """Drop in-flight work: results captured under an older epoch are never written back."""
        self._epoch += 1
        self.busy = False
        self.queue.clear()
        self.pending_rescores.clear()

    def _is_stale(self, epoch: int, state: SessionState) -> bool:
        return epoch != self._epoch or state is not self._state

    def recompute_drift(self, state: SessionState | None = None) -> None:
        state = state or self.state
        state.drift_state = compute_drift_state(
            state.dimensions,
            state.score_history,
            self.settings.drift_window,
            self.settings.drift_threshold,
            self.settings.drift_alert_threshold,
            state.cusum_reset_after,
        )

    # --- injections ---

    def inject_correction(self, text: str) -> None:
        depth = injection_depth(self.settings.correction_depth, len(self.host.turns()))
        self.host.set_injection(CORRECTION_KEY, text, POSITION_IN_PROMPT, depth, ROLE_SYSTEM)
        logger.info("Correction injected at depth %d", depth)

    def clear_correction(self) -> None:
        self.host.clear_injection(CORRECTION_KEY)

    def inject_baseline(self, text: str) -> None:
        if text:
            self.host.set_injection(BASELINE_KEY, text, POSITION_IN_PROMPT, self.settings.baseline_depth, ROLE_SYSTEM)

    def clear_baseline(self) -> None:
        self.host.clear_injection(BASELINE_KEY)

    # --- model identity ---

    def _clear_ceiling_on_model_change(self, state: SessionState, result: CycleResult) -> None:
        if not state.ceiling_dimensions or not state.ceiling_model:
            return
        current = self.host.model_id() or "unknown"
        if current == state.ceiling_model or current == "unknown":
            return
        labels = ", ".join(state.label_for(d) for d in state.ceiling_dimensions)
        old = state.ceiling_model
        state.ceiling_dimensions = []
        state.ceiling_model = None
        self.save(state)
        add_notice(result, f"Model changed ({old} -> {current}). Ceiling cleared for: {labels}", LEVEL_INFO)

    # --- event entry points ---

    async def handle_event(self, event: HostEvent) -> List[CycleResult]:
        if isinstance(event, TurnRendered):
            return await self.on_turn_rendered(event.index)
        if isinstance(event, TurnSwiped):
            self.on_turn_swiped(event.index)
            return []
        if isinstance(event, ChatChanged):
            return [await self.on_chat_changed()]
        raise TypeError(f"Unsupported host event: {event!r}")

    async def on_turn_rendered(self, index: int) -> List[CycleResult]:
        if index in self.pending_rescores:
            self.pending_rescores.discard(index)
            logger.info("Swipe re-score triggered for message #%d", index)
            return await self.on_message_received(index, force=True)
        return await self.on_message_received(index)

    async def on_message_received(self, index: int, force: bool = False) -> List[CycleResult]:
        if not self.settings.enabled:
            return []
        if self.busy:
            self.enqueue(index, force)
            return []
        return [await self.score_and_process_message(index, force=force)]

    def enqueue(self, index: int, force: bool = False) -> None:
        """Queue a message for after the in-flight cycle; a forced request upgrades a queued one."""
        for pos, (queued, queued_force) in enumerate(self.queue):
            if queued == index:
                if force and not queued_force:
                    self.queue[pos] = (index, True)
                return
        self.queue.append((index, force))
        logger.info("Scoring in progress, queued message #%d (queue size: %d)", index, len(self.queue))

    def on_turn_swiped(self, index: int) -> bool:
        """Discard the score of a regenerated turn and arm a forced re-score for its next render."""
        state = self.state
        if not state.remove_score(index):
            return False
        logger.info("Discarded score for swiped message #%d", index)
        if state.dimensions:
            self.recompute_drift(state)
        self.save(state)
        self.pending_rescores.add(index)
        return True

    # --- scoring cycle ---

    def _check_turn(self, turn: Optional[Turn], result: CycleResult, force: bool) -> bool:
        profile = self.host.profile()
        if turn is None or not turn.is_assistant:
            result.skipped = "not_assistant"
            if force:
                add_notice(result, "No valid AI message to score.")
            return False
        if is_greeting(turn, profile):
            result.skipped = "greeting"
            if force:
                add_notice(result, "Cannot score the greeting message (card author content).")
            return False
        if is_ooc_text(turn.text):
            result.skipped = "ooc"
            if force:
                add_notice(result, "Cannot score an OOC message.")
            return False
        return True

    async def score_and_process_message(self, index: int, force: bool = False) -> CycleResult:
        """Run one scoring cycle for the turn at `index`, then drain the queue.

        Single-flight: while another cycle is running the request is queued and
        picked up when that cycle drains the queue.
        """
        if self.busy:
            self.enqueue(index, force)
            result = CycleResult(message_index=index, skipped="busy")
            if force:
                add_notice(result, "Scoring already in progress, message queued.", LEVEL_INFO)
            return result
        result = await self._run_cycle(index, force)
        result.queued_results.extend(await self._drain_queue())
        return result

    async def _drain_queue(self) -> List[CycleResult]:
        results: List[CycleResult] = []
        while self.queue and not self.busy:
            index, force = self.queue.popleft()
            if not self._is_live_assistant_turn(index):
                logger.info("Skipping stale queued message #%d (message no longer valid)", index)
                continue
            logger.info("Processing queued message #%d (%d remaining)", index, len(self.queue))
            results.append(await self._run_cycle(index, force))
        return results

    def _is_live_assistant_turn(self, index: int) -> bool:
        turn = _turn_at(self.host.turns(), index)
        return turn is not None and turn.is_assistant

    async def _run_cycle(self, index: int, force: bool) -> CycleResult:
        result = CycleResult(message_index=index)
        state = self.state
        settings = self.settings
        if not state.dimensions:
            result.skipped = "not_calibrated"
            if force:
                add_notice(result, "No dimensions calibrated yet.")
            return result

        self._clear_ceiling_on_model_change(state, result)

        turns = self.host.turns()
        turn = _turn_at(turns, index)
        if not self._check_turn(turn, result, force):
            return result
        if not force and state.is_scored(index):
            result.skipped = "already_scored"
            return result
        if not force and not should_score(state, turns, settings):
            result.skipped = "frequency"
            return result

        profile = self.host.profile()
        name = profile.display_name() if profile else "the character"
        user_name = profile.user_name if profile else "User"
        profile_text = profile.full_text() if profile else ""
        epoch = self._epoch
        self.busy = True
        try:
            scoring = await score_response(
                self.analyzer,
                state.dimensions,
                turn.text,
                build_recent_context(turns, index, name, user_name),
                name,
                profile_text,
                rng=self.rng,
            )
            if self._is_stale(epoch, state):
                result.skipped = "stale"
                return result
            if scoring.is_empty():
                logger.warning("Scoring returned empty results, skipping this cycle")
                result.skipped = "empty_scores"
                if force:
                    add_notice(result, "Scoring returned empty results.")
                return result

            if force:
                state.remove_score(index)
            state.append_score(
                ScoreEntry(
                    message_id=index,
                    timestamp=time.time(),
                    scores=scoring.observed,
                    content_hash=hash_text(turn.text[:CONTENT_HASH_CHARS]),
                    reasoning=scoring.reasoning,
                )
            )
            state.messages_scored += 1
            result.scored = True
            self._warn_unscored(state, result)

            self.recompute_drift(state)
            if not settings.correction_enabled:
                self.save(state)
                return result

            machine = CorrectionMachine(
                state,
                settings,
                self._correction_writer(state, turns, profile),
                model_id=self.host.model_id(),
            )
            step = await machine.step(state.drift_state, set(scoring.observed), index)
            if self._is_stale(epoch, state):
                result.skipped = "stale"
                return result
            result.drifting = [d.dim_id for d in step.drifting]
            for notice in step.notices:
                add_notice(result, notice["message"], notice["level"])
            if step.injection_changed:
                if step.injection is None:
                    self.clear_correction()
                else:
                    self.inject_correction(step.injection)
            self.save(state)
        except Exception as e:
            log_error_with_context(e, "scoring", chat_id=self.chat_id, message_index=index)
            if not self._is_stale(epoch, state):
                self.save(state)
            add_notice(result, f"Analysis error: {e}. Scoring skipped.", LEVEL_WARNING)
        finally:
            if epoch == self._epoch:
                self.busy = False
        return result

    def _correction_writer(self, state: SessionState, turns: List[Turn], profile):
        settings = self.settings

        async def write(targets: List[DriftingDimension], escalation: Optional[EscalationContext]) -> str:
            return await generate_correction(
                self.analyzer,
                targets,
                state.dimensions,
                profile or CharacterProfile(),
                turns,
                state.score_history,
                threshold=settings.drift_threshold,
                max_dimensions=settings.correction_max_dimensions,
                window=settings.drift_window,
                escalation=escalation,
            )

        return write

    @staticmethod
    def _warn_unscored(state: SessionState, result: CycleResult) -> None:
        recent = state.score_history[-UNSCORED_WARNING_CYCLES:]
        if len(recent) < UNSCORED_WARNING_CYCLES:
            return
        for dim in state.dimensions:
            if all(dim.id not in e.scores for e in recent):
                add_notice(
                    result,
                    f'"{dim.label}" has not been scored in the last {UNSCORED_WARNING_CYCLES} cycles.',
                )

    # --- retroactive scoring ---

    async def score_chat_retroactively(self) -> CycleResult:
        """Score every Nth eligible, unscored assistant turn of the chat, then recompute drift once."""
        result = CycleResult()
        state = self.state
        if not state.dimensions:
            add_notice(result, "No dimensions calibrated. Calibrate dimensions first.")
            result.skipped = "not_calibrated"
            return result
        turns = self.host.turns()
        if not turns:
            add_notice(result, "No messages in chat.")
            result.skipped = "empty_chat"
            return result
        if self.busy:
            add_notice(result, "Scoring already in progress...", LEVEL_INFO)
            result.skipped = "busy"
            return result

        profile = self.host.profile()
        freq = self.settings.score_frequency
        to_score: List[Turn] = []
        ai_count = 0
        for turn in turns:
            if not turn.is_assistant or is_greeting(turn, profile) or is_ooc_text(turn.text):
                continue
            ai_count += 1
            if ai_count % freq != 0 and not (ai_count == 1 and self.settings.score_on_first):
                continue
            if state.is_scored(turn.index):
                continue
            to_score.append(turn)

        if not to_score:
            add_notice(result, "No unscored messages to process.", LEVEL_INFO)
            result.skipped = "nothing_to_score"
            return result

        name = profile.display_name() if profile else "the character"
        user_name = profile.user_name if profile else "User"
        profile_text = profile.full_text() if profile else ""
        epoch = self._epoch
        self.busy = True
        scored = 0
        try:
            for turn in to_score:
                if not turn.text:
                    continue
                try:
                    scoring = await score_response(
                        self.analyzer,
                        state.dimensions,
                        turn.text,
                        build_recent_context(turns, turn.index, name, user_name),
                        name,
                        profile_text,
                        rng=self.rng,
                    )
                except Exception as e:
                    logger.warning("Retroactive: failed to score message #%d: %s", turn.index, e)
                    continue
                if self._is_stale(epoch, state):
                    result.skipped = "stale"
                    return result
                if scoring.is_empty():
                    logger.warning("Retroactive: empty scores for message #%d, skipping", turn.index)
                    continue
                state.append_score(
                    ScoreEntry(
                        message_id=turn.index,
                        timestamp=time.time(),
                        scores=scoring.observed,
                        content_hash=hash_text(turn.text[:CONTENT_HASH_CHARS]),
                        reasoning=scoring.reasoning,
                    )
                )
                state.messages_scored += 1
                scored += 1

            # Retroactive entries can land behind later ones; keep history in chat order
            state.score_history.sort(key=lambda e: e.message_id)
            if state.score_history:
                state.last_scored_message_id = state.score_history[-1].message_id
            self.recompute_drift(state)
            self.save(state)
        finally:
            if epoch == self._epoch:
                self.busy = False
        result.scored = scored > 0
        add_notice(result, f"Scored {scored} messages", LEVEL_SUCCESS)
        logger.info("Retroactive scoring complete: %d/%d messages scored", scored, len(to_score))
        result.queued_results.extend(await self._drain_queue())
        return result

    # --- calibration and chat lifecycle ---

    def set_dimensions(self, dimensions: List[ActiveDimension], manual: bool = True) -> None:
        """Replace the active dimensions; manual edits suppress hash-based recalibration."""
        state = self.state
        state.dimensions = list(dimensions)
        state.dimensions_manually_edited = manual
        if state.score_history:
            self.recompute_drift(state)
        self.save(state)

    async def calibrate(self, result: CycleResult | None = None, force: bool = False) -> bool:
        """Calibrate (or load the pinned calibration). False when nothing usable came back."""
        result = result or CycleResult()
        state = self.state
        profile = self.host.profile()
        profile_text = profile.full_text() if profile else ""
        if not profile_text:
            return False
        card_hash = hash_text(profile_text)
        key = profile.character_key()

        if not force:
            pinned = self.calibrations.load(key, card_hash)
            if pinned:
                logger.info("Loaded pinned calibration for %s", key)
                state.dimensions = pinned
                state.calibration_hash = card_hash
                self.save(state)
                return True

        epoch = self._epoch
        try:
            dims = await calibrate_dimensions(self.analyzer, profile_text, profile.display_name())
        except Exception as e:
            log_error_with_context(e, "calibration", chat_id=self.chat_id)
            add_notice(result, f"Calibration failed: {e}")
            return False
        if self._is_stale(epoch, state):
            logger.info("Chat changed during calibration, discarding stale results")
            return False
        if not dims:
            add_notice(result, "Calibration returned no usable dimensions.")
            return False

        state.dimensions = dims
        state.calibration_hash = card_hash
        state.dimensions_manually_edited = False
        self.save(state)
        self.calibrations.save(key, dims, card_hash)
        logger.info("Dimensions calibrated: %s", ", ".join(f"{d.id}={d.target:.2f}" for d in dims))

        if self.settings.baseline_enabled:
            try:
                baseline = await generate_baseline(self.analyzer, dims, profile)
            except Exception as e:
                logger.warning("Baseline generation failed: %s", e)
                baseline = None
            if baseline and not self._is_stale(epoch, state):
                state.baseline_text = baseline
                self.save(state)
        return True

    async def on_chat_changed(self) -> CycleResult:
        """(Re)load the chat: version check, calibration, drift rebuild, re-injection."""
        self.invalidate()
        self._state = None
        result = CycleResult()
        if not self.settings.enabled:
            result.skipped = "disabled"
            return result

        state = self.state
        if state.data_version != DATA_VERSION:
            logger.info("Stored data version %s != %s; clearing scoring data", state.data_version, DATA_VERSION)
            state.reset_scoring_data()
            self.calibrations.clear()
            self.clear_correction()
            self.clear_baseline()
            self.save(state)
            add_notice(result, "Old scoring data cleared; dimensions will recalibrate.", LEVEL_INFO)

        profile = self.host.profile()
        profile_text = profile.full_text() if profile else ""
        if not profile_text:
            result.skipped = "no_profile"
            return result

        card_hash = hash_text(profile_text)
        needs_calibration = not state.dimensions or (
            card_hash != state.calibration_hash and not state.dimensions_manually_edited
        )
        if needs_calibration:
            await self.calibrate(result)
            if self._state is not state:
                result.skipped = "stale"
                return result

        if state.dimensions and state.score_history and not state.drift_state:
            self.recompute_drift(state)
            self.save(state)

        if self.settings.baseline_enabled and state.baseline_text:
            self.inject_baseline(state.baseline_text)
        record = state.active_correction
        if self.settings.correction_enabled and record is not None and record.injection_text:
            self.inject_correction(record.injection_text)
        return result

    def disable(self) -> None:
        """Master switch off: drop injections and any in-flight correction."""
        state = self.state
        self.clear_correction()
        self.clear_baseline()
        state.active_correction = None
        if state.phase == CorrectionPhase.ACTIVE:
            state.phase = CorrectionPhase.IDLE
        self.save(state)

    # --- reports ---

    async def generate_report(self, with_insights: bool = True) -> Optional[SessionReport]:
        """Score the session, store the report on the chat and append it to the cross-session index."""
        state = self.state
        if not state.score_history:
            return None
        profile = self.host.profile()
        report = await generate_report(
            self.analyzer if with_insights else None,
            state,
            card_name=profile.name if profile and profile.name else "Unknown",
            model_id=self.host.model_id(),
            messages_total=len(self.host.turns()),
            threshold=self.settings.drift_threshold,
        )
        state.report = report.model_dump(mode="json")
        self.save(state)
        append_report_index(self.settings_store, index_entry(self.chat_id, report, [d.id for d in state.dimensions]))
        return report

    def flush(self) -> None:
        self.metadata_store.flush()
        self.settings_store.flush()


class DriftService:
    """Controllers per chat id, plus the notion of which chat the host has open.

    `analyzer` serves the service-wide health checks; every controller gets a fork of it
    with its own health cache. Switching chats releases the previous controller.
    """

    def __init__(
        self,
        settings: DriftSettings,
        analyzer: Analyzer,
        metadata_store: ChatMetadataStore,
        settings_store: KeyValueStore,
    ):
        self.settings = settings
        self.analyzer = analyzer
        self.metadata_store = metadata_store
        self.settings_store = settings_store
        self.controllers: Dict[str, ChatController] = {}
        self.current_chat_id: Optional[str] = None

    def controller(self, chat_id: str, host: ChatHost | None = None) -> ChatController:
        ctl = self.controllers.get(chat_id)
        if ctl is None:
            if host is None:
                raise KeyError(f"Unknown chat {chat_id!r}")
            ctl = ChatController(
                chat_id, host, self.settings, self.analyzer.fork(), self.metadata_store, self.settings_store
            )
            self.controllers[chat_id] = ctl
        elif host is not None:
            ctl.host = host
        return ctl

    async def dispatch(self, chat_id: str, event: HostEvent, host: ChatHost | None = None) -> List[CycleResult]:
        if isinstance(event, ChatChanged) and event.chat_id != self.current_chat_id:
            previous = self.controllers.pop(self.current_chat_id or "", None)
            if previous is not None:
                previous.invalidate()
                previous.flush()
                logger.info("Released controller for chat %s", previous.chat_id)
            self.current_chat_id = event.chat_id
            chat_id = event.chat_id
        return await self.controller(chat_id, host).handle_event(event)

    async def aclose(self) -> None:
        for ctl in self.controllers.values():
            ctl.flush()
        await self.analyzer.aclose()
