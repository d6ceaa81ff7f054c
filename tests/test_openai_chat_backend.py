from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List

import httpx
import pytest

import yips_agent.llm.openai_chat as mod
from yips_agent.config.loader import YipsLlmConfig
from yips_agent.core.contracts import Message
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.llm.openai_chat import ChatCompletionsBackend


def _cfg(**overrides: Any) -> YipsLlmConfig:
    retry = overrides.pop("retry", {})
    return YipsLlmConfig(base_url="http://example.test/v1/", model="local-model", retry=YipsLlmConfig.Retry(**retry), **overrides)


def _sse(*chunks: Dict[str, Any], done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _delta(text: str) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


def _make(handler: Callable[[httpx.Request], httpx.Response], **cfg: Any) -> ChatCompletionsBackend:
    return ChatCompletionsBackend(_cfg(**cfg), transport=httpx.MockTransport(handler))


_MESSAGES = [Message(role="system", content="sys"), Message(role="user", content="hi")]


@pytest.fixture
def fake_sleep(monkeypatch: pytest.MonkeyPatch) -> List[float]:
    sleeps: List[float] = []

    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    monkeypatch.setattr(mod.asyncio, "sleep", _fake_sleep)
    monkeypatch.setattr(mod.random, "uniform", lambda a, b: 0.0)
    return sleeps


# ----------------------------
# request shape
# ----------------------------


def test_streaming_request_payload_and_deltas() -> None:
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        usage = {"choices": [], "usage": {"total_tokens": 30, "completion_tokens": 5}}
        return httpx.Response(200, content=_sse(_delta("Hel"), _delta("lo"), usage))

    deltas: List[str] = []
    reply = asyncio.run(_make(_handler).complete(_MESSAGES, stream=True, on_delta=deltas.append))

    assert reply.text == "Hello"
    assert reply.rendered is True
    assert reply.total_tokens == 30
    assert reply.completion_tokens == 5
    assert reply.generation_duration_ms is not None
    assert deltas == ["Hel", "lo"]

    req = seen[0]
    assert str(req.url) == "http://example.test/v1/chat/completions"
    body = json.loads(req.content)
    assert body["model"] == "local-model"
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}
    assert body["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    assert "temperature" not in body
    assert "authorization" not in req.headers


def test_streaming_without_delta_hook_is_not_rendered() -> None:
    reply = asyncio.run(_make(lambda r: httpx.Response(200, content=_sse(_delta("x"), done=False))).complete(_MESSAGES))
    assert reply.text == "x"
    assert reply.rendered is False


def test_non_streaming_request() -> None:
    seen: List[Dict[str, Any]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "plain"}, "finish_reason": "stop"}],
                "usage": {"total_tokens": 12, "completion_tokens": 3},
            },
        )

    reply = asyncio.run(_make(_handler, temperature=0.2, max_tokens=64).complete(_MESSAGES, stream=False))

    assert reply.text == "plain"
    assert reply.rendered is False
    assert reply.total_tokens == 12
    assert seen[0]["stream"] is False
    assert "stream_options" not in seen[0]
    assert seen[0]["temperature"] == 0.2
    assert seen[0]["max_tokens"] == 64


def test_bearer_header_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("YIPS_TEST_KEY", "sk-test")
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=_sse(_delta("ok")))

    asyncio.run(_make(_handler, api_key_env="YIPS_TEST_KEY").complete(_MESSAGES))
    assert seen[0].headers["authorization"] == "Bearer sk-test"


def test_explicit_api_key_overrides_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("YIPS_TEST_KEY", "from-env")
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=_sse(_delta("ok")))

    backend = ChatCompletionsBackend(
        _cfg(api_key_env="YIPS_TEST_KEY"), api_key="override", transport=httpx.MockTransport(_handler)
    )
    asyncio.run(backend.complete(_MESSAGES))
    assert seen[0].headers["authorization"] == "Bearer override"


# ----------------------------
# retry / failure
# ----------------------------


def test_retry_429_honours_retry_after(fake_sleep: List[float]) -> None:
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"error": {"message": "slow down"}})
        return httpx.Response(200, content=_sse(_delta("ok")))

    reply = asyncio.run(_make(_handler).complete(_MESSAGES))

    assert reply.text == "ok"
    assert calls["n"] == 2
    assert fake_sleep == [2.0]


def test_server_errors_exhaust_retries(fake_sleep: List[float]) -> None:
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503, json={"error": {"message": "overloaded"}})

    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler, retry={"max_retries": 2}).complete(_MESSAGES))

    assert calls["n"] == 3
    assert fake_sleep == [0.5, 1.0]
    assert str(ei.value) == "HTTP 503 from server: overloaded"
    assert isinstance(ei.value.cause, httpx.HTTPStatusError)


def test_auth_error_is_not_retried(fake_sleep: List[float]) -> None:
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler).complete(_MESSAGES, stream=False))

    assert calls["n"] == 1
    assert fake_sleep == []
    assert ei.value.message == "HTTP 401 from server: bad key"


def test_timeout_is_retried_then_wrapped(fake_sleep: List[float]) -> None:
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler, retry={"max_retries": 1}).complete(_MESSAGES))

    assert calls["n"] == 2
    assert len(fake_sleep) == 1
    assert ei.value.message == "request timed out"
    assert isinstance(ei.value.cause, httpx.TimeoutException)


class _BrokenAfterFirstChunk(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield _sse(_delta("partial"), done=False)
        raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        return None


def test_no_retry_after_text_was_emitted(fake_sleep: List[float]) -> None:
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, stream=_BrokenAfterFirstChunk())

    deltas: List[str] = []
    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler).complete(_MESSAGES, on_delta=deltas.append))

    assert calls["n"] == 1
    assert deltas == ["partial"]
    assert fake_sleep == []
    assert ei.value.message.startswith("connection failed:")


def test_length_finish_reason_is_context_length_failure() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "cut"}, "finish_reason": "length"}]})

    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler).complete(_MESSAGES, stream=False))
    assert ei.value.message == "context length exceeded"


def test_missing_choices_is_failure() -> None:
    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(lambda r: httpx.Response(200, json={"choices": []})).complete(_MESSAGES, stream=False))
    assert ei.value.message == "response has no choices"


def test_non_json_body_is_failure(fake_sleep) -> None:  # type: ignore[no-untyped-def]
    calls = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, text="<html>proxy error</html>", headers={"Content-Type": "text/html"})

    with pytest.raises(BackendUnavailableError) as ei:
        asyncio.run(_make(_handler).complete(_MESSAGES, stream=False))
    assert ei.value.message == "response is not valid JSON"
    assert calls["n"] == 1
    assert fake_sleep == []
