"""``driftguard replay``: run a recorded chat transcript through the drift monitor.

Transcript format (JSON)::

    {
      "chat_id": "demo",              # optional
      "model_id": "some-model",       # optional
      "profile": {"name": "...", "description": "...", "first_message": "..."},
      "turns": [{"author_kind": "assistant", "text": "..."}, {"author_kind": "user", "text": "..."}]
    }

Turns are fed one at a time, exactly as a host would render them; every assistant
turn fires a render event. Scoring uses the configured analysis backend.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def register(subparsers) -> None:
    p = subparsers.add_parser("replay", help="Replay a chat transcript through the drift monitor")
    p.add_argument("transcript", help="Path to a transcript JSON file")
    p.add_argument("--settings", default=None, help="YAML settings file")
    p.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override one setting (repeatable), e.g. --set score_frequency=1",
    )
    p.add_argument("--db", default=None, help="Persist state to this SQLite file (default: in-memory)")
    p.add_argument("--report", action="store_true", help="Generate a session report at the end")
    p.add_argument("--no-insights", action="store_true", help="Skip LLM insights in the report")
    p.add_argument("--export", default=None, metavar="DIR", help="Write the session report JSON to DIR")
    p.set_defaults(func=run)


def parse_overrides(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        out[key.strip()] = value.strip()
    return out


def load_transcript(path: Path) -> dict[str, Any]:
    """Read and validate a transcript file; turn indices are assigned in file order."""
    from backend.app.models.events import CharacterProfile, Turn

    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("turns"), list):
        raise ValueError("Transcript must be an object with a 'turns' list")
    turns = [
        Turn.model_validate({**t, "index": i}) for i, t in enumerate(data["turns"])
    ]
    return {
        "chat_id": str(data.get("chat_id") or path.stem),
        "model_id": str(data.get("model_id") or "unknown"),
        "profile": CharacterProfile.model_validate(data.get("profile") or {}),
        "turns": turns,
    }


def _print_result(result) -> None:
    prefix = f"#{result.message_index}" if result.message_index is not None else "chat"
    if result.scored:
        line = f"  {prefix}: scored"
        if result.drifting:
            line += f" (drifting: {', '.join(result.drifting)})"
        print(line)
    elif result.skipped and result.skipped not in ("frequency", "greeting", "ooc"):
        print(f"  {prefix}: skipped ({result.skipped})")
    for notice in result.notices:
        print(f"    [{notice['level'].upper()}] {notice['message']}")
    for queued in result.queued_results:
        _print_result(queued)


async def replay(transcript: dict[str, Any], settings, db_path: str | None, report: bool, insights: bool, export_dir: str | None) -> int:
    from backend.app.core.analysis import Analyzer
    from backend.app.core.controller import DriftService
    from backend.app.core.host import InMemoryHost, MemoryChatMetadataStore, MemoryKeyValueStore
    from backend.app.core.llm_provider import create_backend
    from backend.app.core.report import export_report
    from backend.app.core.store import SqliteChatMetadataStore, SqliteSettingsStore
    from backend.app.models.events import ChatChanged, TurnRendered

    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        metadata, kv = SqliteChatMetadataStore(db_path), SqliteSettingsStore(db_path)
    else:
        metadata, kv = MemoryChatMetadataStore(), MemoryKeyValueStore()

    service = DriftService(settings, Analyzer(create_backend(settings)), metadata, kv)
    chat_id = transcript["chat_id"]
    host = InMemoryHost(character=transcript["profile"], model=transcript["model_id"])
    try:
        print(f"Replaying {len(transcript['turns'])} turns of chat '{chat_id}'")
        for result in await service.dispatch(chat_id, ChatChanged(chat_id=chat_id), host):
            _print_result(result)
        ctl = service.controller(chat_id)
        if not ctl.state.dimensions:
            print("  No dimensions calibrated; nothing to score.")
            return 1
        print("  Dimensions: " + ", ".join(f"{d.id}={d.target:.2f}" for d in ctl.state.dimensions))

        for turn in transcript["turns"]:
            host.chat_turns.append(turn)
            if turn.is_assistant:
                for result in await service.dispatch(chat_id, TurnRendered(index=turn.index), host):
                    _print_result(result)

        state = ctl.state
        print()
        print(f"Scored {state.messages_scored} messages, {state.corrections_injected} corrections injected")
        for dim_id, drift in sorted(state.drift_state.items()):
            avg = "-" if drift.moving_avg is None else f"{drift.moving_avg:.2f}"
            dev = "-" if drift.deviation is None else f"{drift.deviation:.2f}"
            print(f"  {state.label_for(dim_id)}: estimate={avg} deviation={dev} trend={drift.trend}")
        for key, inj in host.injections.items():
            print(f"  Active injection {key} (depth {inj.depth}, {len(inj.text)} chars)")

        if report or export_dir:
            session_report = await ctl.generate_report(with_insights=insights)
            if session_report is None:
                print("No scored messages; no report generated.")
                return 1
            print()
            print(f"Card Resilience:     {session_report.card_resilience}")
            print(f"Session Quality:     {session_report.session_quality}")
            print(f"Model Compatibility: {session_report.model_compatibility}")
            for dim_id, verdict in session_report.dimension_verdicts.items():
                print(f"  {state.label_for(dim_id)}: {verdict}")
            if session_report.insights:
                print()
                print(session_report.insights)
            if export_dir:
                path = export_report(state, host.profile(), export_dir)
                print(f"\nReport written to {path}")
        return 0
    finally:
        await service.aclose()


def run(args) -> int:
    from backend.app.config import load_settings

    path = Path(args.transcript)
    if not path.is_file():
        print(f"ERROR: transcript not found: {path}")
        return 1
    try:
        overrides = parse_overrides(args.overrides)
        transcript = load_transcript(path)
    except (ValueError, json.JSONDecodeError) as e:
        print(f"ERROR: {e}")
        return 1

    settings = load_settings(raw=overrides, path=args.settings)
    return asyncio.run(
        replay(transcript, settings, args.db, args.report or bool(args.export), not args.no_insights, args.export)
    )
