"""Analysis backends: OpenAI-compatible HTTP client, claude CLI bridge, retry policy."""
from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from backend.app.config import DriftSettings
from backend.app.core.llm_provider import (
    AnalysisBackend,
    AnalysisError,
    ClaudeCliBackend,
    OpenAICompatBackend,
    create_backend,
)
from backend.app.core.retry import HTTP_BACKEND_RETRY, NO_RETRY, RetryPolicy

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _ok(content: str = '{"warmth": 0.5}') -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class FakeSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _backend(handler, policy: RetryPolicy = NO_RETRY, **kwargs) -> OpenAICompatBackend:
    return OpenAICompatBackend(
        kwargs.pop("endpoint", "http://llm.local/v1/"),
        retry_policy=policy,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _run(backend: OpenAICompatBackend, expect_json: bool = True) -> str:
    async def go():
        try:
            return await backend.complete(MESSAGES, 100, expect_json)
        finally:
            await backend.aclose()

    return asyncio.run(go())


class TestRetryPolicy:
    def test_delays_double_and_cap(self):
        policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=8.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]
        assert policy.delay_for(0) == 0.0

    def test_retry_budget(self):
        policy = RetryPolicy(max_retries=2, retryable_statuses=frozenset({429}))
        assert policy.max_attempts == 3
        assert policy.should_retry_status(429, 0)
        assert policy.should_retry_status(429, 1)
        assert not policy.should_retry_status(429, 2)
        assert not policy.should_retry_status(500, 0)

    def test_http_defaults(self):
        assert HTTP_BACKEND_RETRY.retryable_statuses == frozenset({429, 503})
        assert HTTP_BACKEND_RETRY.retry_transport_errors
        assert NO_RETRY.max_retries == 0


class TestOpenAICompatBackend:
    def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return _ok()

        out = _run(_backend(handler, api_key="sk-test", model="gpt-x"))
        assert out == '{"warmth": 0.5}'
        assert seen["url"] == "http://llm.local/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        body = seen["body"]
        assert body["model"] == "gpt-x"
        assert body["max_tokens"] == 100
        assert body["temperature"] == 0.1
        assert body["response_format"] == {"type": "json_object"}

    def test_text_requests_skip_json_mode(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return _ok("plain")

        assert _run(_backend(handler), expect_json=False) == "plain"
        assert "response_format" not in seen["body"]
        assert "model" not in seen["body"]

    def test_retries_rate_limit_with_backoff(self):
        sleep = FakeSleep()
        responses = [httpx.Response(429), httpx.Response(503), _ok()]

        def handler(request):
            return responses.pop(0)

        policy = RetryPolicy(max_retries=3, retryable_statuses=frozenset({429, 503}), sleep=sleep)
        assert _run(_backend(handler, policy)) == '{"warmth": 0.5}'
        assert sleep.delays == [1.0, 2.0]

    def test_gives_up_after_retry_budget(self):
        sleep = FakeSleep()
        policy = RetryPolicy(max_retries=2, retryable_statuses=frozenset({429}), sleep=sleep)
        with pytest.raises(AnalysisError, match="429"):
            _run(_backend(lambda r: httpx.Response(429, text="slow down"), policy))
        assert len(sleep.delays) == 2

    def test_json_mode_rejection_falls_back_once(self):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            if "response_format" in body:
                return httpx.Response(400, text="response_format not supported")
            return _ok()

        assert _run(_backend(handler)) == '{"warmth": 0.5}'
        assert len(bodies) == 2
        assert "response_format" not in bodies[1]

    def test_other_errors_raise(self):
        with pytest.raises(AnalysisError, match="Analysis API 500"):
            _run(_backend(lambda r: httpx.Response(500, text="boom")))

    def test_transport_errors_are_retried(self):
        sleep = FakeSleep()
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return _ok()

        policy = RetryPolicy(max_retries=1, retry_transport_errors=True, sleep=sleep)
        assert _run(_backend(handler, policy)) == '{"warmth": 0.5}'
        assert sleep.delays == [1.0]

    def test_unreachable_without_retries(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AnalysisError, match="Cannot connect"):
            _run(_backend(handler))

    def test_empty_choices(self):
        assert _run(_backend(lambda r: httpx.Response(200, json={"choices": []}))) == ""

    def test_missing_endpoint(self):
        with pytest.raises(AnalysisError, match="not configured"):
            _run(_backend(lambda r: _ok(), endpoint=""))

    def test_probe(self):
        backend = _backend(lambda r: _ok('{"status":"ok"}'))
        assert asyncio.run(backend.probe())
        failing = _backend(lambda r: httpx.Response(500))
        assert not asyncio.run(failing.probe())


class TestClaudeCliBackend:
    def test_split_messages(self):
        system, prompt = ClaudeCliBackend.split_messages(
            [
                {"role": "system", "content": "first"},
                {"role": "system", "content": "second"},
                {"role": "user", "content": "a"},
                {"role": "assistant", "content": "b"},
            ]
        )
        assert system == "second"
        assert prompt == "a\nb"

    def test_args(self):
        args = ClaudeCliBackend(model="haiku").build_args("be brief")
        assert args[:2] == ["-p", "-"]
        assert args[args.index("--model") + 1] == "haiku"
        assert args[-2:] == ["--system-prompt", "be brief"]
        assert "--system-prompt" not in ClaudeCliBackend().build_args("")

    def test_timeout_scales_with_tokens(self):
        backend = ClaudeCliBackend()
        assert backend.timeout_for(100) == 120.0
        assert backend.timeout_for(4000) == pytest.approx(800.0)

    def test_parse_output(self):
        assert ClaudeCliBackend.parse_output('{"result": "hello"}') == "hello"
        assert ClaudeCliBackend.parse_output("not json ") == "not json"

    def test_missing_executable(self, monkeypatch):
        monkeypatch.setattr("backend.app.core.llm_provider.shutil.which", lambda name: None)
        backend = ClaudeCliBackend()
        with pytest.raises(AnalysisError, match="Claude CLI not found"):
            backend.find_executable()
        assert not asyncio.run(backend.probe())

    def test_empty_prompt(self):
        with pytest.raises(AnalysisError, match="No user/assistant content"):
            asyncio.run(ClaudeCliBackend(executable="claude").complete([{"role": "system", "content": "x"}]))


class TestCreateBackend:
    def test_factory(self):
        cli = create_backend(DriftSettings(analysis_backend="claude_code", claude_code_model="opus"))
        assert isinstance(cli, ClaudeCliBackend)
        assert cli.model == "opus"

        http = create_backend(DriftSettings(analysis_backend="openai_compat", openai_endpoint="http://x/v1/"))
        assert isinstance(http, OpenAICompatBackend)
        assert http.endpoint == "http://x/v1"
        assert isinstance(http, AnalysisBackend)
        asyncio.run(http.aclose())
