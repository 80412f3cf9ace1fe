"""Failure logging for engine stages and the JSON error body the API returns."""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def error_code(stage: str, suffix: str | int) -> str:
    """``("report", 409)`` -> ``REPORT_HTTP_409``; ``("scoring", "ERROR")`` -> ``SCORING_ERROR``."""
    if isinstance(suffix, int):
        return f"{stage.upper()}_HTTP_{suffix}"
    return f"{stage.upper()}_{suffix}"


def log_error_with_context(
    error: Exception,
    stage: str,
    chat_id: str | None = None,
    message_index: int | None = None,
    extra_context: dict[str, Any] | None = None,
) -> None:
    """Log `error` with its traceback, tagged with the stage, chat and message it interrupted.

    The same fields go into the record's `extra` so structured log handlers can index them.
    """
    context: dict[str, Any] = {"chat_id": chat_id, "message_index": message_index}
    context = {k: v for k, v in context.items() if v is not None}
    summary = ", ".join(f"{k}={v}" for k, v in context.items()) or "no context"
    logger.error(
        "[%s] %s: %s (%s)",
        stage,
        type(error).__name__,
        error,
        summary,
        exc_info=error,
        extra={**(extra_context or {}), **context, "stage": stage},
    )


def create_error_response(
    error_code: str,
    message: str,
    node: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Body of every non-2xx API response: ``{error_code, message[, node][, details]}``."""
    response: dict[str, Any] = {"error_code": error_code, "message": message}
    if node:
        response["node"] = node
    if details:
        response["details"] = details
    return response
