"""Versioned prompt registry, template rendering and hashing helpers."""
from __future__ import annotations

import hashlib
import re
from functools import lru_cache
from pathlib import Path

_PROMPT_ROOT = Path(__file__).resolve().parent
_DEFAULT_VERSION = "v1"
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

PROMPT_NAMES = ("calibration", "scoring", "correction", "baseline", "report_insights")


def _prompt_path(name: str, version: str = _DEFAULT_VERSION) -> Path:
    return _PROMPT_ROOT / version / f"{name}.txt"


@lru_cache(maxsize=64)
def load_prompt(name: str, version: str = _DEFAULT_VERSION) -> str:
    path = _prompt_path(name, version)
    return path.read_text(encoding="utf-8").strip()


def render_prompt(name: str, version: str = _DEFAULT_VERSION, **values: object) -> str:
    """Fill {{placeholder}} slots; unknown placeholders render as empty strings.

    Substitution is single-pass, so braces inside substituted values are never re-expanded.
    """
    body = load_prompt(name, version)
    return _PLACEHOLDER_RE.sub(lambda m: str(values.get(m.group(1), "")), body)


@lru_cache(maxsize=64)
def prompt_hash(name: str, version: str = _DEFAULT_VERSION) -> str:
    body = load_prompt(name, version)
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    return digest


def prompt_version_id(name: str, version: str = _DEFAULT_VERSION) -> str:
    return f"{version}:{prompt_hash(name, version)[:12]}"


def prompt_registry_snapshot() -> dict[str, str]:
    """Compact prompt version map attached to exported reports."""
    return {name: prompt_version_id(name) for name in PROMPT_NAMES}
