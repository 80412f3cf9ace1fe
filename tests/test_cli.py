"""Smoke tests for the driftguard CLI wrapper.

Run with: python -m pytest tests/test_cli.py -v
"""
from __future__ import annotations

import argparse
import json
import subprocess
import sys

import pytest

from driftguard.cli import build_parser, main
from driftguard.commands import replay as replay_cmd


def _run_cli(*args: str, timeout: int = 60) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "driftguard", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
    )


class TestCLIHelp:
    """Verify that all subcommands register and print help without errors."""

    def test_main_help(self):
        result = _run_cli("--help")
        assert result.returncode == 0
        for name in ("doctor", "catalog", "config", "replay", "export", "serve"):
            assert name in result.stdout

    def test_replay_help(self):
        result = _run_cli("replay", "--help")
        assert result.returncode == 0
        assert "--set" in result.stdout
        assert "--no-insights" in result.stdout

    def test_serve_help(self):
        result = _run_cli("serve", "--help")
        assert result.returncode == 0
        assert "--port" in result.stdout


class TestParser:
    def test_verbose_flag_counts(self):
        parser = build_parser()
        assert parser.parse_args(["catalog"]).verbose == 0
        assert parser.parse_args(["-vv", "catalog"]).verbose == 2

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 0
        assert "COMMAND" in capsys.readouterr().out


class TestCommandsRun:
    def test_doctor_exits_cleanly(self):
        result = _run_cli("doctor")
        # 0 (all ok) or 1 (issues found), never a crash
        assert result.returncode in (0, 1)
        assert "DriftGuard Doctor" in result.stdout

    def test_catalog_json(self):
        result = _run_cli("catalog", "--json")
        assert result.returncode == 0
        ids = [d["id"] for d in json.loads(result.stdout)]
        assert "warmth" in ids

    def test_config_json(self):
        result = _run_cli("config", "--json")
        assert result.returncode == 0
        assert json.loads(result.stdout)["drift_threshold"] == pytest.approx(0.2)


class TestGuardrails:
    def test_replay_missing_file(self):
        result = _run_cli("replay", "/nonexistent/transcript_abc123.json")
        assert result.returncode == 1
        assert "ERROR" in result.stdout

    def test_export_missing_db(self):
        result = _run_cli("export", "--db", "/nonexistent/db/abc123.db")
        assert result.returncode == 1
        assert "not found" in result.stdout.lower()


class TestReplay:
    def test_parse_overrides(self):
        assert replay_cmd.parse_overrides(["score_frequency=1", " drift_window = 4 "]) == {
            "score_frequency": "1",
            "drift_window": "4",
        }
        with pytest.raises(ValueError):
            replay_cmd.parse_overrides(["oops"])

    def test_load_transcript_assigns_indices(self, tmp_path):
        path = tmp_path / "mira.json"
        path.write_text(
            json.dumps(
                {
                    "profile": {"name": "Mira", "description": "A gentle herbalist."},
                    "turns": [
                        {"author_kind": "assistant", "text": "Hello."},
                        {"author_kind": "user", "text": "Hi."},
                    ],
                }
            ),
            encoding="utf-8",
        )
        transcript = replay_cmd.load_transcript(path)
        assert transcript["chat_id"] == "mira"
        assert transcript["model_id"] == "unknown"
        assert [t.index for t in transcript["turns"]] == [0, 1]
        assert transcript["profile"].name == "Mira"

    def test_bad_transcript(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"turns": "nope"}', encoding="utf-8")
        with pytest.raises(ValueError):
            replay_cmd.load_transcript(path)

    def test_replay_with_scripted_backend(self, tmp_path, monkeypatch, capsys):
        from backend.tests.fakes import ScriptedBackend, make_host, make_profile

        backend = ScriptedBackend()
        backend.scores["warmth"] = 0.0
        monkeypatch.setattr("backend.app.core.llm_provider.create_backend", lambda settings: backend)

        turns = [
            t.model_dump(mode="json") for t in make_host(assistant_turns=3).turns()
        ]
        path = tmp_path / "mira.json"
        path.write_text(
            json.dumps({"model_id": "model-a", "profile": make_profile().model_dump(), "turns": turns}),
            encoding="utf-8",
        )
        args = argparse.Namespace(
            transcript=str(path),
            settings="",
            overrides=["score_frequency=1", "baseline_enabled=false"],
            db=None,
            report=True,
            no_insights=True,
            export=str(tmp_path / "out"),
        )
        assert replay_cmd.run(args) == 0
        out = capsys.readouterr().out
        assert "Scored 3 messages" in out
        assert "Active injection driftguard_correction" in out
        assert "Card Resilience:" in out
        assert list((tmp_path / "out").glob("driftguard_report_mira_*.json"))
        assert backend.closed
