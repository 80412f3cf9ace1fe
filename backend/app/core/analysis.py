"""Analyzer: per-chat front door to the analysis backend.

Owns the backend-health cache (5 minute TTL) that used to be process-global,
strips <think> blocks, and extracts JSON when the caller expects it.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, List

from backend.app.constants import BACKEND_PROBE_TTL_SECONDS
from backend.app.core.json_repair import extract_json, strip_think_tags
from backend.app.core.llm_provider import AnalysisBackend, AnalysisError, ChatMessage

logger = logging.getLogger(__name__)


class Analyzer:
    """Routes analysis calls to one backend and remembers whether it is reachable."""

    def __init__(
        self,
        backend: AnalysisBackend,
        probe_ttl: float = BACKEND_PROBE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.probe_ttl = probe_ttl
        self._clock = clock
        self._available: bool | None = None  # None = unknown
        self._probed_at = 0.0

    def fork(self) -> "Analyzer":
        """Another analyzer over the same backend, with its own (empty) health cache."""
        return Analyzer(self.backend, probe_ttl=self.probe_ttl, clock=self._clock)

    @property
    def available(self) -> bool | None:
        if self._available is not None and self._clock() - self._probed_at > self.probe_ttl:
            self._available = None
        return self._available

    def invalidate_health(self) -> None:
        self._available = None

    def _record_health(self, ok: bool) -> None:
        self._available = ok
        self._probed_at = self._clock()

    async def ensure_available(self) -> None:
        """Probe (at most once per TTL) backends that need it before use."""
        if not getattr(self.backend, "probe_before_use", False):
            return
        cached = self.available
        if cached is False:
            raise AnalysisError(f"Analysis backend '{self.backend.name}' not available")
        if cached is None:
            ok = await self.backend.probe()
            self._record_health(ok)
            if not ok:
                raise AnalysisError(f"Analysis backend '{self.backend.name}' not running")

    async def analyze(self, messages: List[ChatMessage], max_tokens: int = 500, expect_json: bool = True) -> Any:
        """Run one request. expect_json -> parsed JSON or None; otherwise cleaned text."""
        await self.ensure_available()
        try:
            raw = await self.backend.complete(messages, max_tokens, expect_json)
        except AnalysisError:
            self.invalidate_health()
            raise
        text = strip_think_tags(raw if isinstance(raw, str) else str(raw))
        if expect_json:
            return extract_json(text)
        return text

    async def test_connection(self) -> dict[str, Any]:
        """Probe the backend now, bypassing the cache. Returns {success, message}."""
        name = self.backend.name
        try:
            ok = await self.backend.probe()
        except AnalysisError as e:
            ok = False
            logger.info("Connection test for %s failed: %s", name, e)
        self._record_health(ok)
        if ok:
            return {"success": True, "message": f"{name} backend connected"}
        return {"success": False, "message": f"{name} backend not reachable"}

    async def aclose(self) -> None:
        await self.backend.aclose()
