"""Analysis backend abstraction: hosted chat-completion API and local `claude` CLI bridge.

Each backend implements AnalysisBackend. Analyzer (core/analysis.py) routes calls to
the backend selected in DriftSettings.analysis_backend.
"""
from __future__ import annotations

import asyncio
import json as _json
import logging
import shutil
from typing import Any, Dict, List, Protocol, runtime_checkable

import httpx

from backend.app.config import DriftSettings
from backend.app.constants import (
    CLI_DEFAULT_TIMEOUT_SECONDS,
    CLI_KILL_GRACE_SECONDS,
    CLI_TIMEOUT_PER_TOKEN_SECONDS,
    OPENAI_HTTP_TIMEOUT_SECONDS,
    OPENAI_TEMPERATURE,
)
from backend.app.core.retry import HTTP_BACKEND_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]


class AnalysisError(Exception):
    """Raised when an analysis backend is unreachable, times out, or answers with an error."""


@runtime_checkable
class AnalysisBackend(Protocol):
    """Unified interface for analysis backends."""

    name: str

    async def complete(self, messages: List[ChatMessage], max_tokens: int, expect_json: bool) -> str:
        """Run one chat-style request. Returns raw response text."""
        ...

    async def probe(self) -> bool:
        """Cheap health check."""
        ...

    async def aclose(self) -> None:
        ...


class OpenAICompatBackend:
    """Client for OpenAI-compatible chat completion APIs (OpenAI, OpenRouter, vLLM, llama.cpp...).

    `endpoint` is the API base including any version prefix, e.g. https://api.openai.com/v1.
    """

    name = "openai"
    probe_before_use = False

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        model: str = "",
        retry_policy: RetryPolicy = HTTP_BACKEND_RETRY,
        timeout: float = OPENAI_HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = (endpoint or "").rstrip("/")
        self.api_key = api_key
        self.model = model
        self.retry_policy = retry_policy
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def complete(self, messages: List[ChatMessage], max_tokens: int = 500, expect_json: bool = True) -> str:
        """Call {endpoint}/chat/completions with bounded retry on 429/503 and transport errors."""
        if not self.endpoint:
            raise AnalysisError("OpenAI endpoint not configured")

        url = f"{self.endpoint}/chat/completions"
        headers: Dict[str, str] = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"

        payload: Dict[str, Any] = {
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": OPENAI_TEMPERATURE,
            "stream": False,
        }
        if self.model:
            payload["model"] = self.model
        json_mode = expect_json
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        policy = self.retry_policy
        attempt = 0
        while True:
            try:
                response = await self.client.post(url, json=payload, headers=headers)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                if policy.retry_transport_errors and policy.can_retry(attempt):
                    attempt += 1
                    logger.warning("Analysis API unreachable (%s), retry %d/%d", exc, attempt, policy.max_retries)
                    await policy.backoff(attempt)
                    continue
                if isinstance(exc, httpx.TimeoutException):
                    raise AnalysisError("Analysis API request timed out") from exc
                raise AnalysisError(f"Cannot connect to analysis API at {self.endpoint}") from exc
            except httpx.HTTPError as exc:
                raise AnalysisError(f"Analysis API network error: {exc}") from exc

            status = response.status_code
            if status == 400 and json_mode:
                # Many local servers reject response_format; retry once without it
                logger.info("Analysis API rejected JSON mode (400); retrying without response_format")
                payload.pop("response_format", None)
                json_mode = False
                continue
            if policy.should_retry_status(status, attempt):
                attempt += 1
                logger.warning("Analysis API %d, retry %d/%d", status, attempt, policy.max_retries)
                await policy.backoff(attempt)
                continue
            if status >= 400:
                raise AnalysisError(f"Analysis API {status}: {response.text[:300]}")

            try:
                body = response.json()
            except _json.JSONDecodeError as exc:
                raise AnalysisError("Analysis API returned non-JSON response") from exc

            choices = body.get("choices") or []
            if not choices:
                return ""
            return (choices[0].get("message") or {}).get("content") or ""

    async def probe(self) -> bool:
        if not self.endpoint:
            return False
        try:
            await self.complete([{"role": "user", "content": 'Respond with: {"status":"ok"}'}], 50, True)
        except AnalysisError as e:
            logger.info("OpenAI probe failed: %s", e)
            return False
        return True


class ClaudeCliBackend:
    """Bridge to the local `claude` CLI: one subprocess per request, prompt on stdin.

    Timeout scales with the token budget: max(120s, max_tokens * 0.2s). On timeout the
    process gets SIGTERM, then SIGKILL after a 5s grace period.
    """

    name = "claude_code"
    probe_before_use = True

    def __init__(
        self,
        model: str = "sonnet",
        executable: str | None = None,
        default_timeout: float = CLI_DEFAULT_TIMEOUT_SECONDS,
        kill_grace: float = CLI_KILL_GRACE_SECONDS,
    ):
        self.model = model
        self._executable = executable
        self.default_timeout = default_timeout
        self.kill_grace = kill_grace

    async def aclose(self) -> None:
        return None

    def find_executable(self) -> str:
        if self._executable:
            return self._executable
        found = shutil.which("claude")
        if not found:
            raise AnalysisError(
                "Claude CLI not found. Install Claude Code and ensure `claude` is on your PATH."
            )
        self._executable = found
        logger.info("Found claude CLI at: %s", found)
        return found

    def timeout_for(self, max_tokens: int) -> float:
        return max(self.default_timeout, max_tokens * CLI_TIMEOUT_PER_TOKEN_SECONDS)

    def build_args(self, system_prompt: str) -> list[str]:
        args = ["-p", "-", "--output-format", "json", "--tools", "", "--no-session-persistence"]
        if self.model:
            args += ["--model", self.model]
        if system_prompt:
            args += ["--system-prompt", system_prompt]
        return args

    @staticmethod
    def split_messages(messages: List[ChatMessage]) -> tuple[str, str]:
        """Chat messages -> (system_prompt, prompt). The last system message wins."""
        system_prompt = ""
        parts: list[str] = []
        for msg in messages:
            role = msg.get("role")
            content = msg.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                continue
            if role == "system":
                system_prompt = content
            else:
                parts.append(content)
        return system_prompt, "\n".join(parts).strip()

    @staticmethod
    def parse_output(stdout: str) -> str:
        try:
            outer = _json.loads(stdout)
        except _json.JSONDecodeError:
            return stdout.strip()
        if isinstance(outer, dict):
            return outer.get("result") or outer.get("content") or stdout
        return stdout

    async def complete(self, messages: List[ChatMessage], max_tokens: int = 500, expect_json: bool = True) -> str:
        system_prompt, prompt = self.split_messages(messages)
        if not prompt:
            raise AnalysisError("No user/assistant content found in messages")

        executable = self.find_executable()
        timeout = self.timeout_for(max_tokens)
        logger.debug("Running claude CLI model=%s prompt_length=%d timeout=%.0fs", self.model, len(prompt), timeout)
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *self.build_args(system_prompt),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._executable = None
            raise AnalysisError(f"Failed to spawn claude: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._terminate(proc)
            raise AnalysisError(f"claude process timed out after {timeout:.0f}s") from exc

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace")[:500]
            raise AnalysisError(f"claude exited with code {proc.returncode}: {err}")
        return self.parse_output(stdout.decode("utf-8", errors="replace"))

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("claude process ignored SIGTERM; killing")
            proc.kill()
            await proc.wait()

    async def probe(self) -> bool:
        try:
            self.find_executable()
        except AnalysisError as e:
            logger.info("Claude CLI probe failed: %s", e)
            return False
        return True


def create_backend(settings: DriftSettings) -> AnalysisBackend:
    """Factory: build the analysis backend named by settings.analysis_backend."""
    if settings.analysis_backend == "claude_code":
        return ClaudeCliBackend(model=settings.claude_code_model or "sonnet")
    if settings.analysis_backend == "openai":
        return OpenAICompatBackend(
            endpoint=settings.openai_endpoint,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
        )
    raise NotImplementedError(
        f"Backend '{settings.analysis_backend}' not supported. Supported: openai, claude_code."
    )
