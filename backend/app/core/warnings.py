"""Notice aggregation for scoring cycles.

Notices are what a host shows the user (drift detected, ceiling reached, backend
errors). They are collected on the cycle result instead of being pushed to a UI.
"""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

LEVEL_INFO = "info"
LEVEL_SUCCESS = "success"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"


def _get_container(target: Any) -> list[dict[str, str]] | None:
    """Return a mutable notice list from target (list, dict, or object with .notices)."""
    if target is None:
        return None
    if isinstance(target, list):
        return target
    if isinstance(target, dict):
        notices = target.get("notices")
        if notices is None:
            notices = []
            target["notices"] = notices
        return notices
    if hasattr(target, "notices"):
        notices = getattr(target, "notices", None)
        if notices is None:
            notices = []
            try:
                setattr(target, "notices", notices)
            except Exception as e:
                logger.debug("Failed to attach notices to target: %s", e)
                return None
        return notices
    return None


def add_notice(target: Any, message: str, level: str = LEVEL_WARNING) -> None:
    """Append a notice to the target's notice list (deduped on level + text)."""
    if not message:
        return
    notices = _get_container(target)
    if notices is None:
        return
    notice = {"level": level, "message": message}
    if notice not in notices:
        notices.append(notice)
    log = logger.warning if level in (LEVEL_WARNING, LEVEL_ERROR) else logger.info
    log("[notice:%s] %s", level, message)
