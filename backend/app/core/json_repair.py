"""JSON extraction from analysis-model output.

Models wrap JSON in prose, chain-of-thought, markdown fences or <think> blocks.
extract_json() tries, in order: the whole text, the first fenced block, then the
first balanced {...} and [...] spans (string-aware, so braces inside string
values do not confuse the matcher).
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_think_tags(text: str) -> str:
    """Remove reasoning-model <think>...</think> blocks."""
    if not text:
        return ""
    return _THINK_RE.sub("", text).strip()


def _balanced_span(text: str, opener: str, closer: str) -> str | None:
    """Return the first balanced opener..closer span, ignoring brackets inside strings."""
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if c == "\\":
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == opener:
            depth += 1
        elif c == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    # Unmatched brackets
    return None


def _loads(candidate: str) -> Any:
    """json.loads with a second try after dropping trailing commas."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        repaired = _TRAILING_COMMA_RE.sub(r"\1", candidate)
        if repaired == candidate:
            raise
        return json.loads(repaired)


def extract_json_object(text: str) -> str | None:
    """Return the first complete JSON object substring, or None."""
    if not text or not text.strip():
        return None
    return _balanced_span(text.strip(), "{", "}")


def extract_json_array(text: str) -> str | None:
    """Return the first complete JSON array substring, or None."""
    if not text or not text.strip():
        return None
    return _balanced_span(text.strip(), "[", "]")


def extract_json(raw: Any) -> Any | None:
    """Parse JSON out of model output. Returns the parsed value or None.

    Non-string input that is already a dict/list is returned unchanged.
    """
    if not isinstance(raw, str):
        return raw if isinstance(raw, (dict, list)) else None

    text = raw.strip()
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fence = _FENCE_RE.search(text)
    if fence:
        try:
            return _loads(fence.group(1).strip())
        except json.JSONDecodeError:
            pass

    for span in (extract_json_object(text), extract_json_array(text)):
        if span is None:
            continue
        try:
            return _loads(span)
        except json.JSONDecodeError:
            continue

    logger.warning("Failed to extract JSON from response: %s", text[:200])
    return None
