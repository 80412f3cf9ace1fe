"""``driftguard doctor``: environment health check.

Checks: Python version, venv active, deps installed, settings valid,
data dirs writable, prompt templates present, analysis backend reachable.
"""
from __future__ import annotations

import asyncio
import importlib.util
import sys
from pathlib import Path

# ANSI helpers (no-op on dumb terminals)
_COLOR = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _ok(msg: str) -> str:
    return f"  [OK]   {msg}" if not _COLOR else f"  \033[32m[OK]\033[0m   {msg}"


def _warn(msg: str) -> str:
    return f"  [WARN] {msg}" if not _COLOR else f"  \033[33m[WARN]\033[0m {msg}"


def _fail(msg: str) -> str:
    return f"  [FAIL] {msg}" if not _COLOR else f"  \033[31m[FAIL]\033[0m {msg}"


def _section(title: str) -> str:
    return f"\n{'=' * 60}\n  {title}\n{'=' * 60}"


def register(subparsers) -> None:
    p = subparsers.add_parser("doctor", help="Check environment health")
    p.add_argument("--probe", action="store_true", help="Send a live test request to the analysis backend")
    p.add_argument("--settings", default=None, help="YAML settings file to validate")
    p.set_defaults(func=run)


def _check_python() -> bool:
    v = sys.version_info
    ok = v >= (3, 10)
    line = f"Python {v.major}.{v.minor}.{v.micro}"
    print(_ok(line) if ok else _fail(f"{line}; need 3.10+"))
    return ok


def _check_venv() -> bool:
    in_venv = sys.prefix != sys.base_prefix
    print(_ok("Virtual environment active") if in_venv else _warn("No virtual environment detected (recommended: create with python -m venv venv)"))
    return True  # warn only


def _check_deps() -> list[str]:
    required = ["fastapi", "uvicorn", "pydantic", "yaml", "httpx"]
    missing = []
    for mod in required:
        try:
            if importlib.util.find_spec(mod) is None:
                missing.append(mod)
        except (ImportError, ValueError):
            missing.append(mod)
    if missing:
        print(_fail(f"Missing packages: {', '.join(missing)}"))
        print("         Run: pip install -e .")
    else:
        print(_ok(f"All {len(required)} required packages installed"))
    return missing


def _check_settings(path: str | None):
    from backend.app.config import load_settings

    try:
        settings = load_settings(path=path)
    except (OSError, ValueError) as e:
        print(_fail(f"Settings could not be loaded: {e}"))
        return None
    print(_ok(f"Settings loaded (backend={settings.analysis_backend}, enabled={settings.enabled})"))
    return settings


def _check_data_dirs() -> bool:
    from backend.app.config import DEFAULT_DB_PATH, DEFAULT_EXPORT_DIR

    all_ok = True
    for label, d in (("Database dir", Path(DEFAULT_DB_PATH).parent), ("Export dir", Path(DEFAULT_EXPORT_DIR))):
        if not d.is_dir():
            print(_warn(f"{label} missing: {d}/ (created on first use)"))
            continue
        test_file = d / ".doctor_test"
        try:
            test_file.write_text("ok")
            test_file.unlink()
            print(_ok(f"{label}: {d}/ is writable"))
        except OSError as e:
            print(_fail(f"{label}: {d}/ not writable: {e}"))
            all_ok = False
    return all_ok


def _check_prompts() -> bool:
    from backend.app.prompts.registry import PROMPT_NAMES, prompt_registry_snapshot

    try:
        snapshot = prompt_registry_snapshot()
    except OSError as e:
        print(_fail(f"Prompt templates unreadable: {e}"))
        return False
    print(_ok(f"Prompt templates: {len(snapshot)}/{len(PROMPT_NAMES)} present"))
    return len(snapshot) == len(PROMPT_NAMES)


def _check_backend(settings, probe: bool) -> bool:
    from backend.app.core.analysis import Analyzer
    from backend.app.core.llm_provider import AnalysisError, ClaudeCliBackend, create_backend

    backend = create_backend(settings)
    if isinstance(backend, ClaudeCliBackend):
        try:
            path = backend.find_executable()
        except AnalysisError as e:
            print(_fail(str(e)))
            return False
        print(_ok(f"claude CLI found at {path} (model={settings.claude_code_model})"))
    elif not settings.openai_endpoint:
        print(_fail("OpenAI-compatible backend selected but openai_endpoint is empty"))
        print("         Set DRIFTGUARD_OPENAI_ENDPOINT, e.g. https://api.openai.com/v1")
        return False
    else:
        print(_ok(f"OpenAI-compatible endpoint: {settings.openai_endpoint}"))

    if not probe:
        asyncio.run(backend.aclose())
        return True

    async def _probe():
        analyzer = Analyzer(backend)
        try:
            return await analyzer.test_connection()
        finally:
            await analyzer.aclose()

    result = asyncio.run(_probe())
    print(_ok(result["message"]) if result["success"] else _fail(result["message"]))
    return bool(result["success"])


def run(args) -> int:
    print(_section("DriftGuard Doctor"))
    errors = 0

    if not _check_python():
        errors += 1

    _check_venv()

    if _check_deps():
        errors += 1
        print()
        print(_fail("Cannot continue without required packages"))
        return 1

    settings = _check_settings(args.settings)
    if settings is None:
        errors += 1

    if not _check_data_dirs():
        errors += 1

    if not _check_prompts():
        errors += 1

    if settings is not None and not _check_backend(settings, args.probe):
        errors += 1

    print()
    if errors == 0:
        print(_ok("All checks passed; ready to run!"))
        return 0
    print(_fail(f"{errors} issue(s) found; see above for fixes"))
    return 1
