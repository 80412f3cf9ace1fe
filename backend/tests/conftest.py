"""Pytest setup: force temp files into workspace and share drift-monitor fixtures."""
from __future__ import annotations

import os
import random
import shutil
import tempfile
from pathlib import Path
from uuid import uuid4

_TMP_ROOT = Path(__file__).resolve().parent / ".tmp"
os.environ.setdefault("DRIFTGUARD_DATA_DIR", str(_TMP_ROOT / "data"))

import pytest  # noqa: E402

from backend.app.config import DriftSettings  # noqa: E402
from backend.app.core.analysis import Analyzer  # noqa: E402
from backend.app.core.controller import ChatController, DriftService  # noqa: E402
from backend.app.core.host import MemoryChatMetadataStore, MemoryKeyValueStore  # noqa: E402
from backend.tests.fakes import ScriptedBackend, make_host  # noqa: E402


def pytest_sessionstart(session) -> None:
    """Redirect temp files to a writable workspace path for tests."""
    _TMP_ROOT.mkdir(parents=True, exist_ok=True)
    for key in ("TMPDIR", "TEMP", "TMP"):
        os.environ[key] = str(_TMP_ROOT)
    tempfile.tempdir = str(_TMP_ROOT)

    class _WorkspaceTemporaryDirectory:
        """TemporaryDirectory variant that uses a workspace path with safe permissions."""

        def __init__(self, suffix: str | None = None, prefix: str | None = None, dir: str | None = None, **_kwargs):
            base = Path(dir) if dir else _TMP_ROOT
            name = f"{(prefix or 'tmp')}{uuid4().hex}{suffix or ''}"
            self._path = base / name
            self._path.mkdir(parents=True, exist_ok=False)

        def __enter__(self) -> str:
            return str(self._path)

        def __exit__(self, exc_type, exc, tb) -> None:
            shutil.rmtree(self._path, ignore_errors=True)

    tempfile.TemporaryDirectory = _WorkspaceTemporaryDirectory


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def analyzer(backend) -> Analyzer:
    return Analyzer(backend)


@pytest.fixture
def settings() -> DriftSettings:
    return DriftSettings(score_frequency=1, baseline_enabled=False)


@pytest.fixture
def service(settings, analyzer) -> DriftService:
    return DriftService(settings, analyzer, MemoryChatMetadataStore(), MemoryKeyValueStore())


@pytest.fixture
def controller(settings, analyzer) -> ChatController:
    host = make_host()
    return ChatController(
        "chat-1",
        host,
        settings,
        analyzer,
        MemoryChatMetadataStore(),
        MemoryKeyValueStore(),
        rng=random.Random(7),
    )
