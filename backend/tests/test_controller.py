"""Per-chat scheduler: chat lifecycle, scoring cycles, queueing, swipes and reports."""
from __future__ import annotations

import asyncio
import random

import pytest

from backend.app.config import DriftSettings
from backend.app.constants import DATA_VERSION
from backend.app.core.analysis import Analyzer
from backend.app.core.correction import BASELINE_KEY, CORRECTION_KEY
from backend.app.core.controller import ChatController, DriftService
from backend.app.core.host import MemoryChatMetadataStore, MemoryKeyValueStore
from backend.app.core.report import REPORT_INDEX_KEY
from backend.app.models.events import AuthorKind, ChatChanged, TurnRendered, TurnSwiped
from backend.app.models.state import ActiveCorrection, CorrectionPhase, ScoreEntry
from backend.tests.fakes import ScriptedBackend, make_host


class GatedBackend(ScriptedBackend):
    """Holds every scoring call until `gate` is set; counts how many are in flight at once."""

    def __init__(self, targets=None):
        super().__init__(targets)
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, messages, max_tokens: int = 500, expect_json: bool = True) -> str:
        if self.stage_for(messages) == "scoring" and self.gate is not None:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await self.gate.wait()
            finally:
                self.in_flight -= 1
        return await super().complete(messages, max_tokens, expect_json)


class InterruptingBackend(ScriptedBackend):
    """Runs `on_scoring` in the middle of a scoring call (e.g. to simulate a chat switch)."""

    def __init__(self):
        super().__init__()
        self.on_scoring = None

    async def complete(self, messages, max_tokens: int = 500, expect_json: bool = True) -> str:
        if self.stage_for(messages) == "scoring" and self.on_scoring is not None:
            self.on_scoring()
        return await super().complete(messages, max_tokens, expect_json)


def _make(backend=None, settings=None, host=None, metadata=None, kv=None, chat_id="chat-1"):
    backend = backend or ScriptedBackend()
    ctl = ChatController(
        chat_id,
        host or make_host(),
        settings or DriftSettings(score_frequency=1, baseline_enabled=False),
        Analyzer(backend),
        metadata or MemoryChatMetadataStore(),
        kv or MemoryKeyValueStore(),
        rng=random.Random(7),
    )
    return ctl, backend


def _reply(ctl: ChatController, text: str = "Mira hums while she works.") -> int:
    ctl.host.add_turn(AuthorKind.USER, "What are you making?")
    return ctl.host.add_turn(AuthorKind.ASSISTANT, text).index


def _calibrated(**kwargs):
    ctl, backend = _make(**kwargs)
    asyncio.run(ctl.on_chat_changed())
    backend.calls.clear()
    return ctl, backend


class TestChatLifecycle:
    def test_first_load_calibrates(self, controller, backend):
        result = asyncio.run(controller.on_chat_changed())
        assert result.skipped is None
        assert [d.id for d in controller.state.dimensions] == ["warmth", "stability", "assertiveness"]
        assert controller.state.calibration_hash
        assert backend.calls == ["calibration"]

    def test_reload_with_same_profile_does_not_recalibrate(self, controller, backend):
        asyncio.run(controller.on_chat_changed())
        asyncio.run(controller.on_chat_changed())
        assert backend.calls == ["calibration"]

    def test_pinned_calibration_is_reused_across_chats(self):
        kv = MemoryKeyValueStore()
        first, backend = _make(kv=kv)
        asyncio.run(first.on_chat_changed())
        second, _ = _make(backend=backend, kv=kv, chat_id="chat-2")
        asyncio.run(second.on_chat_changed())
        assert backend.calls == ["calibration"]
        assert [d.id for d in second.state.dimensions] == ["warmth", "stability", "assertiveness"]

    def test_changed_profile_recalibrates_unless_edited_by_hand(self):
        ctl, backend = _calibrated()
        ctl.host.character = ctl.host.character.model_copy(update={"personality": "sharp, guarded"})
        asyncio.run(ctl.on_chat_changed())
        assert backend.calls == ["calibration"]

        ctl.set_dimensions(ctl.state.dimensions[:1])
        ctl.host.character = ctl.host.character.model_copy(update={"personality": "loud"})
        asyncio.run(ctl.on_chat_changed())
        assert backend.calls == ["calibration"]
        assert [d.id for d in ctl.state.dimensions] == ["warmth"]

    def test_no_profile_skips(self):
        host = make_host()
        host.character = None
        ctl, backend = _make(host=host)
        result = asyncio.run(ctl.on_chat_changed())
        assert result.skipped == "no_profile"
        assert backend.calls == []

    def test_stale_data_version_wipes_scoring_data(self):
        metadata = MemoryChatMetadataStore()
        metadata.data["chat-1"] = {
            "data_version": "0.1.0",
            "score_history": [{"message_id": 2, "timestamp": 1.0, "scores": {"warmth": 0.0}}],
            "corrections_injected": 4,
        }
        ctl, backend = _make(metadata=metadata)
        result = asyncio.run(ctl.on_chat_changed())
        state = ctl.state
        assert state.data_version == DATA_VERSION
        assert state.score_history == []
        assert state.corrections_injected == 0
        assert {"level": "info", "message": "Old scoring data cleared; dimensions will recalibrate."} in result.notices
        assert backend.calls == ["calibration"]

    def test_active_correction_is_reinjected_on_load(self):
        ctl, _ = _calibrated()
        ctl.state.phase = CorrectionPhase.ACTIVE
        ctl.state.active_correction = ActiveCorrection(
            dimension_ids=["warmth"], injection_text="Mira leans in.", since_message=2
        )
        ctl.save()
        asyncio.run(ctl.on_chat_changed())
        assert ctl.host.injections[CORRECTION_KEY].text == "Mira leans in."

    def test_baseline_generated_and_injected(self):
        settings = DriftSettings(score_frequency=1, baseline_enabled=True)
        ctl, backend = _make(settings=settings)
        asyncio.run(ctl.on_chat_changed())
        assert ctl.state.baseline_text == backend.baseline_text
        assert backend.calls == ["calibration", "baseline"]
        assert ctl.host.injections[BASELINE_KEY].depth == settings.baseline_depth


class TestScoringCycle:
    def test_scores_a_new_reply(self):
        ctl, backend = _calibrated()
        index = _reply(ctl)
        (result,) = asyncio.run(ctl.on_turn_rendered(index))
        assert result.scored
        assert backend.calls == ["scoring"]
        entry = ctl.state.score_history[-1]
        assert entry.message_id == index
        assert entry.scores == {"warmth": 0.75, "stability": 0.5, "assertiveness": 0.25}
        assert entry.content_hash
        assert ctl.state.messages_scored == 1
        assert ctl.metadata_store.load("chat-1")["messages_scored"] == 1

    def test_uncalibrated_chat_is_skipped(self):
        ctl, backend = _make()
        index = _reply(ctl)
        result = asyncio.run(ctl.score_and_process_message(index, force=True))
        assert result.skipped == "not_calibrated"
        assert result.notices[0]["message"] == "No dimensions calibrated yet."
        assert backend.calls == []

    def test_greeting_and_user_turns_are_not_scored(self):
        ctl, backend = _calibrated()
        _reply(ctl)
        greeting = asyncio.run(ctl.score_and_process_message(0, force=True))
        assert greeting.skipped == "greeting"
        user = asyncio.run(ctl.score_and_process_message(1, force=True))
        assert user.skipped == "not_assistant"
        assert backend.calls == []

    def test_already_scored_reply_is_not_scored_twice(self):
        ctl, backend = _calibrated()
        index = _reply(ctl)
        asyncio.run(ctl.on_turn_rendered(index))
        (again,) = asyncio.run(ctl.on_turn_rendered(index))
        assert again.skipped == "already_scored"
        assert backend.calls == ["scoring"]

    def test_frequency_gate(self):
        ctl, backend = _calibrated(settings=DriftSettings(score_frequency=2, baseline_enabled=False))
        first = _reply(ctl)
        (r1,) = asyncio.run(ctl.on_turn_rendered(first))
        assert r1.scored  # score_on_first
        second = _reply(ctl)
        (r2,) = asyncio.run(ctl.on_turn_rendered(second))
        assert r2.skipped == "frequency"
        third = _reply(ctl)
        (r3,) = asyncio.run(ctl.on_turn_rendered(third))
        assert r3.scored

    def test_disabled_monitor_does_nothing(self):
        ctl, backend = _calibrated()
        ctl.settings = DriftSettings(enabled=False)
        assert asyncio.run(ctl.on_turn_rendered(_reply(ctl))) == []
        assert backend.calls == []

    def test_empty_scores_are_not_recorded(self):
        ctl, backend = _calibrated()
        backend.scores = {k: None for k in backend.scores}
        result = asyncio.run(ctl.score_and_process_message(_reply(ctl), force=True))
        assert result.skipped == "empty_scores"
        assert ctl.state.score_history == []

    def test_backend_failure_becomes_a_notice(self):
        ctl, backend = _calibrated()
        backend.fail_stages.add("scoring")
        (result,) = asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        assert not result.scored
        assert ctl.state.score_history == []
        assert not ctl.busy

    def test_persistent_drift_injects_a_correction(self):
        ctl, backend = _calibrated()
        backend.scores["warmth"] = 0.0
        (first,) = asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        assert CORRECTION_KEY not in ctl.host.injections
        (second,) = asyncio.run(ctl.on_turn_rendered(_reply(ctl)))

        assert second.drifting == ["warmth"]
        assert "correction" in backend.calls
        injection = ctl.host.injections[CORRECTION_KEY]
        assert injection.text == backend.correction_text
        assert injection.depth == 2  # 5 turns in the chat, clamped to half
        state = ctl.state
        assert state.phase == CorrectionPhase.ACTIVE
        assert state.active_correction.dimension_ids == ["warmth"]
        assert state.corrections_injected == 1

    def test_correction_disabled_only_tracks_drift(self):
        ctl, backend = _calibrated(
            settings=DriftSettings(score_frequency=1, baseline_enabled=False, correction_enabled=False)
        )
        backend.scores["warmth"] = 0.0
        asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        assert ctl.state.drift_state["warmth"].correcting
        assert "correction" not in backend.calls
        assert ctl.host.injections == {}

    def test_model_change_clears_the_ceiling(self):
        ctl, _ = _calibrated()
        ctl.state.ceiling_dimensions = ["warmth"]
        ctl.state.ceiling_model = "model-a"
        ctl.host.model = "model-b"
        (result,) = asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        assert ctl.state.ceiling_dimensions == []
        assert ctl.state.ceiling_model is None
        assert {"level": "info", "message": "Model changed (model-a -> model-b). Ceiling cleared for: Warmth"} in result.notices

    def test_unscored_dimension_warning(self):
        ctl, backend = _calibrated()
        backend.scores["stability"] = None
        results = [asyncio.run(ctl.on_turn_rendered(_reply(ctl)))[0] for _ in range(3)]
        warning = '"Stability" has not been scored in the last 3 cycles.'
        assert all(n["message"] != warning for n in results[1].notices)
        assert any(n["message"] == warning for n in results[2].notices)


class TestSwipes:
    def test_swipe_discards_score_and_rescores_next_render(self):
        ctl, backend = _calibrated()
        index = _reply(ctl)
        asyncio.run(ctl.on_turn_rendered(index))
        old_hash = ctl.state.score_history[-1].content_hash

        assert asyncio.run(ctl.handle_event(TurnSwiped(index=index))) == []
        assert not ctl.state.is_scored(index)
        assert index in ctl.pending_rescores

        ctl.host.replace_turn(index, "Mira snaps at the visitor.")
        (result,) = asyncio.run(ctl.handle_event(TurnRendered(index=index)))
        assert result.scored
        entries = [e for e in ctl.state.score_history if e.message_id == index]
        assert len(entries) == 1
        assert entries[0].content_hash != old_hash
        assert not ctl.pending_rescores

    def test_swipe_of_unscored_turn_is_ignored(self):
        ctl, _ = _calibrated()
        index = _reply(ctl)
        assert not ctl.on_turn_swiped(index)
        assert index not in ctl.pending_rescores

    def test_forced_rescore_replaces_existing_entry(self):
        ctl, backend = _calibrated()
        index = _reply(ctl)
        asyncio.run(ctl.on_turn_rendered(index))
        backend.scores["warmth"] = 0.25
        result = asyncio.run(ctl.score_and_process_message(index, force=True))
        assert result.scored
        assert [e.scores["warmth"] for e in ctl.state.score_history] == [0.25]


class TestQueue:
    def test_requests_while_busy_are_queued_once(self):
        ctl, _ = _calibrated()
        first = _reply(ctl)
        second = _reply(ctl)
        ctl.busy = True
        assert asyncio.run(ctl.on_message_received(second)) == []
        assert asyncio.run(ctl.on_message_received(second)) == []
        assert list(ctl.queue) == [(second, False)]

        ctl.busy = False
        result = asyncio.run(ctl.score_and_process_message(first))
        assert result.scored
        assert [r.message_index for r in result.queued_results] == [second]
        assert result.queued_results[0].scored
        assert not ctl.queue

    def test_queued_index_that_is_no_longer_a_reply_is_dropped(self):
        ctl, backend = _calibrated()
        first = _reply(ctl)
        ctl.queue.extend([(first - 1, False), (99, False)])
        result = asyncio.run(ctl.score_and_process_message(first))
        assert result.queued_results == []
        assert backend.calls == ["scoring"]

    def test_queued_force_flag_is_kept(self):
        ctl, backend = _calibrated()
        first = _reply(ctl)
        asyncio.run(ctl.on_turn_rendered(first))
        second = _reply(ctl)
        ctl.queue.append((first, True))
        result = asyncio.run(ctl.score_and_process_message(second))
        assert result.queued_results[0].scored
        assert backend.calls == ["scoring", "scoring", "scoring"]

    def test_forced_request_upgrades_a_queued_entry(self):
        ctl, _ = _calibrated()
        index = _reply(ctl)
        ctl.busy = True
        asyncio.run(ctl.on_message_received(index))
        asyncio.run(ctl.on_message_received(index, force=True))
        assert list(ctl.queue) == [(index, True)]
        asyncio.run(ctl.on_message_received(index))
        assert list(ctl.queue) == [(index, True)]


class TestSingleFlight:
    def test_direct_request_during_a_cycle_is_queued_not_run(self):
        backend = GatedBackend()
        ctl, _ = _calibrated(backend=backend)
        first = _reply(ctl)
        second = _reply(ctl)

        async def go():
            backend.gate = asyncio.Event()
            running = asyncio.create_task(ctl.on_turn_rendered(first))
            while backend.in_flight == 0:
                await asyncio.sleep(0)
            while_busy = await ctl.score_and_process_message(second, force=True)
            backend.gate.set()
            return while_busy, await running

        while_busy, (result,) = asyncio.run(go())
        assert backend.max_in_flight == 1
        assert while_busy.skipped == "busy"
        assert while_busy.notices[0]["message"] == "Scoring already in progress, message queued."
        assert result.scored
        assert [r.message_index for r in result.queued_results] == [second]
        assert result.queued_results[0].scored
        assert [e.message_id for e in ctl.state.score_history] == [first, second]
        assert not ctl.busy

    def test_request_during_retroactive_scoring_runs_afterwards(self):
        backend = GatedBackend()
        ctl, _ = _calibrated(backend=backend, host=make_host(assistant_turns=2))
        extra = -1

        async def go():
            nonlocal extra
            backend.gate = asyncio.Event()
            running = asyncio.create_task(ctl.score_chat_retroactively())
            while backend.in_flight == 0:
                await asyncio.sleep(0)
            extra = _reply(ctl)
            while_busy = await ctl.score_and_process_message(extra, force=True)
            backend.gate.set()
            return while_busy, await running

        while_busy, result = asyncio.run(go())
        assert while_busy.skipped == "busy"
        assert backend.max_in_flight == 1
        assert [r.message_index for r in result.queued_results] == [extra]
        assert ctl.state.is_scored(extra)


class TestStaleResults:
    def test_chat_switch_mid_cycle_drops_the_result(self):
        backend = InterruptingBackend()
        ctl, _ = _calibrated(backend=backend)
        index = _reply(ctl)
        before = dict(ctl.metadata_store.load("chat-1"))
        backend.on_scoring = ctl.invalidate
        (result,) = asyncio.run(ctl.on_turn_rendered(index))

        assert result.skipped == "stale"
        assert ctl.state.score_history == []
        assert ctl.metadata_store.load("chat-1") == before

    def test_invalidate_clears_queue_and_busy_flag(self):
        ctl, _ = _calibrated()
        ctl.busy = True
        ctl.queue.append((4, False))
        ctl.pending_rescores.add(4)
        ctl.invalidate()
        assert not ctl.busy
        assert not ctl.queue
        assert not ctl.pending_rescores


class TestRetroactive:
    def test_scores_every_unscored_reply_in_order(self):
        ctl, backend = _calibrated(host=make_host(assistant_turns=3))
        result = asyncio.run(ctl.score_chat_retroactively())
        assert result.scored
        assert {"level": "success", "message": "Scored 3 messages"} in result.notices
        assert [e.message_id for e in ctl.state.score_history] == [2, 4, 6]
        assert ctl.state.last_scored_message_id == 6
        assert set(ctl.state.drift_state) == {"warmth", "stability", "assertiveness"}

    def test_respects_frequency(self):
        settings = DriftSettings(score_frequency=2, score_on_first=False, baseline_enabled=False)
        ctl, _ = _calibrated(host=make_host(assistant_turns=4), settings=settings)
        asyncio.run(ctl.score_chat_retroactively())
        assert [e.message_id for e in ctl.state.score_history] == [4, 8]

    def test_fills_gaps_behind_later_entries(self):
        ctl, _ = _calibrated(host=make_host(assistant_turns=3))
        ctl.state.append_score(ScoreEntry(message_id=6, timestamp=1.0, scores={"warmth": 0.75}))
        asyncio.run(ctl.score_chat_retroactively())
        assert [e.message_id for e in ctl.state.score_history] == [2, 4, 6]
        assert ctl.state.last_scored_message_id == 6

    def test_nothing_left_to_score(self):
        ctl, backend = _calibrated(host=make_host(assistant_turns=2))
        asyncio.run(ctl.score_chat_retroactively())
        again = asyncio.run(ctl.score_chat_retroactively())
        assert again.skipped == "nothing_to_score"

    def test_busy_controller_refuses(self):
        ctl, _ = _calibrated(host=make_host(assistant_turns=2))
        ctl.busy = True
        assert asyncio.run(ctl.score_chat_retroactively()).skipped == "busy"

    def test_failed_reply_is_skipped(self):
        ctl, backend = _calibrated(host=make_host(assistant_turns=2))
        backend.fail_stages.add("scoring")
        result = asyncio.run(ctl.score_chat_retroactively())
        assert not result.scored
        assert {"level": "success", "message": "Scored 0 messages"} in result.notices


class TestReports:
    def test_no_history_no_report(self):
        ctl, _ = _calibrated()
        assert asyncio.run(ctl.generate_report()) is None

    def test_report_is_stored_and_indexed(self):
        ctl, backend = _calibrated(host=make_host(assistant_turns=3))
        asyncio.run(ctl.score_chat_retroactively())
        report = asyncio.run(ctl.generate_report())
        assert report.card_name == "Mira"
        assert report.model_id == "model-a"
        assert report.messages_scored == 3
        assert report.insights == backend.insights_text
        assert ctl.state.report["card_name"] == "Mira"
        (entry,) = ctl.settings_store.get(REPORT_INDEX_KEY)
        assert entry["chat_id"] == "chat-1"
        assert entry["dimension_ids"] == ["warmth", "stability", "assertiveness"]

    def test_report_without_insights_skips_the_call(self):
        ctl, backend = _calibrated(host=make_host(assistant_turns=2))
        asyncio.run(ctl.score_chat_retroactively())
        backend.calls.clear()
        report = asyncio.run(ctl.generate_report(with_insights=False))
        assert report.insights == ""
        assert backend.calls == []


class TestEndToEnd:
    def test_drift_correct_recover_cooldown_then_drift_again(self):
        ctl, backend = _calibrated(backend=ScriptedBackend(targets={"warmth": 0.8}))
        settings = ctl.settings
        state = ctl.state

        backend.scores["warmth"] = 0.25
        for _ in range(5):
            asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
        assert state.phase == CorrectionPhase.ACTIVE
        assert state.active_correction.dimension_ids == ["warmth"]
        assert CORRECTION_KEY in ctl.host.injections

        backend.scores["warmth"] = 0.8
        for _ in range(30):
            asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
            if state.phase != CorrectionPhase.ACTIVE:
                break
        assert state.phase == CorrectionPhase.COOLDOWN
        assert state.cooldown_remaining == settings.correction_cooldown
        assert state.active_correction is None
        assert CORRECTION_KEY not in ctl.host.injections

        backend.scores["warmth"] = 0.25
        phases = []
        for _ in range(settings.correction_cooldown):
            asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
            phases.append(state.phase)
            assert state.active_correction is None
        assert phases == [CorrectionPhase.COOLDOWN, CorrectionPhase.IDLE]

        for _ in range(12):
            asyncio.run(ctl.on_turn_rendered(_reply(ctl)))
            if state.phase == CorrectionPhase.ACTIVE:
                break
        assert state.phase == CorrectionPhase.ACTIVE
        assert CORRECTION_KEY in ctl.host.injections


class TestDriftService:
    def test_chat_changed_routes_and_tracks_current_chat(self, service, backend):
        host = make_host()
        asyncio.run(service.dispatch("chat-1", ChatChanged(chat_id="chat-1"), host))
        assert service.current_chat_id == "chat-1"
        assert service.controller("chat-1").host is host

        index = host.add_turn(AuthorKind.USER, "Hi").index + 1
        host.add_turn(AuthorKind.ASSISTANT, "Mira smiles.")
        (result,) = asyncio.run(service.dispatch("chat-1", TurnRendered(index=index)))
        assert result.scored

    def test_switching_chats_invalidates_the_previous_one(self, service):
        asyncio.run(service.dispatch("chat-1", ChatChanged(chat_id="chat-1"), make_host()))
        previous = service.controller("chat-1")
        previous.queue.append((3, False))
        asyncio.run(service.dispatch("chat-2", ChatChanged(chat_id="chat-2"), make_host()))
        assert service.current_chat_id == "chat-2"
        assert not previous.queue
        assert "chat-1" not in service.controllers
        assert list(service.controllers) == ["chat-2"]

    def test_each_controller_gets_its_own_analyzer(self, service, backend):
        first = service.controller("chat-1", make_host())
        second = service.controller("chat-2", make_host())
        assert first.analyzer is not second.analyzer
        assert first.analyzer is not service.analyzer
        assert first.analyzer.backend is backend
        assert second.analyzer.backend is backend

    def test_health_cache_is_per_controller(self, service):
        first = service.controller("chat-1", make_host())
        second = service.controller("chat-2", make_host())
        first.analyzer._record_health(False)
        assert first.analyzer.available is False
        assert second.analyzer.available is None
        assert service.analyzer.available is None

    def test_unknown_chat_without_host(self, service):
        with pytest.raises(KeyError):
            service.controller("nope")

    def test_aclose_closes_the_backend(self, service, backend):
        asyncio.run(service.aclose())
        assert backend.closed
