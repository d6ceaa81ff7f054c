"""
OpenAI-compatible `/v1/chat/completions` backend。

说明：
- 面向本地推理服务（llama.cpp server 等），也可用于带 bearer key 的远端服务；
- streaming：SSE 文本增量逐段回调 `on_delta`；非 streaming：一次性 JSON 响应；
- 网络错误与 429/5xx 在“尚未输出任何文本”时按退避策略重试；
- 所有失败最终包装为 `BackendUnavailableError(cause=...)` 抛出。
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from yips_agent.config.loader import YipsLlmConfig
from yips_agent.core.contracts import Message
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.llm.chat_sse import ChatCompletionsSseParser, usage_event
from yips_agent.llm.errors import ContextLengthExceededError, EmptyResponseError
from yips_agent.llm.protocol import AssistantReply, DeltaHook

logger = logging.getLogger(__name__)


def _retryable_status(code: int) -> bool:
    """判断 HTTP status 是否适合重试（保守）。"""

    return code == 429 or 500 <= code <= 599


def _retry_after_ms_from_headers(headers: httpx.Headers) -> Optional[int]:
    """
    从 `Retry-After` 头解析等待毫秒数。

    约束：
    - 仅支持整数秒；无法解析则返回 None。
    """

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        sec = int(str(ra).strip())
    except (ValueError, TypeError):
        return None
    if sec <= 0:
        return None
    return sec * 1000


def _provider_error_message(response: httpx.Response) -> Optional[str]:
    """提取 OpenAI 风格 `{"error": {"message": ...}}` 中的 message（失败返回 None）。"""

    try:
        obj = response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None
    if not isinstance(obj, dict):
        return None
    err = obj.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str):
        return err
    return None


def describe_backend_failure(exc: BaseException) -> str:
    """
    把底层异常转换为面向操作员的一行描述。

    返回：
    - 例如 `HTTP 503 from server: overloaded` / `connection failed: ...`
    """

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = _provider_error_message(exc.response)
        return f"HTTP {status} from server" + (f": {detail}" if detail else "")
    if isinstance(exc, httpx.TimeoutException):
        return "request timed out"
    if isinstance(exc, httpx.RequestError):
        return f"connection failed: {exc}"
    if isinstance(exc, ContextLengthExceededError):
        return "context length exceeded"
    return str(exc) or type(exc).__name__


class ChatCompletionsBackend:
    """
    OpenAI-compatible chat.completions 实现（网络层）。

    参数：
    - cfg：LLM 配置（base_url/model/api_key_env/timeout/retry）
    - api_key：可选的 API key 覆盖（仅内存；优先于环境变量）
    - transport：可选 httpx transport（离线测试注入 `httpx.MockTransport`）
    """

    def __init__(
        self,
        cfg: YipsLlmConfig,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._api_key_override = api_key
        self._transport = transport

    @property
    def model(self) -> str:
        return self._cfg.model

    def _endpoint(self) -> str:
        base = self._cfg.base_url.rstrip("/")
        return f"{base}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        """构造请求头；仅当存在 key 时附带 Authorization。"""

        headers = {"Content-Type": "application/json"}
        key = self._api_key_override
        if not key and self._cfg.api_key_env:
            key = os.environ.get(self._cfg.api_key_env, "")
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _payload(self, messages: Sequence[Message], *, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._cfg.model,
            "messages": [m.to_wire() for m in messages],
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if self._cfg.temperature is not None:
            payload["temperature"] = self._cfg.temperature
        if self._cfg.max_tokens is not None:
            payload["max_tokens"] = int(self._cfg.max_tokens)
        return payload

    async def _sleep_backoff(self, *, attempt: int, retry_after_ms: Optional[int]) -> float:
        """
        等待退避时间（指数退避 + 抖动）。

        说明：
        - attempt 从 0 开始；
        - 优先使用 `Retry-After`，否则使用指数退避（上限 cap_delay_sec）。
        """

        retry = self._cfg.retry
        if retry_after_ms is not None:
            delay = retry_after_ms / 1000.0
        else:
            base = min(retry.cap_delay_sec, retry.base_delay_sec * (2**attempt))
            delay = min(retry.cap_delay_sec, base + random.uniform(0.0, base * retry.jitter_ratio))
        await asyncio.sleep(delay)
        return delay

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        stream: bool = True,
        on_delta: Optional[DeltaHook] = None,
    ) -> AssistantReply:
        """
        发起一次 chat.completions 请求并返回完整回复。

        参数：
        - messages：完整请求消息（system prompt 已由调用方组装）
        - stream：是否使用 SSE streaming
        - on_delta：streaming 时每段文本增量的回调；被调用过则 reply.rendered=True

        异常：
        - BackendUnavailableError：重试耗尽或不可重试的失败（cause 为底层异常）
        """

        payload = self._payload(messages, stream=stream)
        headers = self._headers()
        max_retries = self._cfg.retry.max_retries
        timeout = httpx.Timeout(self._cfg.timeout_sec)

        attempt = 0
        while True:
            state = _ReplyState()
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    if stream:
                        await self._stream_once(client, payload, headers, state, on_delta)
                    else:
                        await self._request_once(client, payload, headers, state)
                return state.to_reply()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if state.emitted_any or attempt >= max_retries or not _retryable_status(status):
                    raise BackendUnavailableError(describe_backend_failure(exc), cause=exc) from exc
                delay = await self._sleep_backoff(
                    attempt=attempt, retry_after_ms=_retry_after_ms_from_headers(exc.response.headers)
                )
                logger.warning("chat request got HTTP %s; retrying in %.2fs (attempt %d)", status, delay, attempt + 1)
                attempt += 1
            except (httpx.TimeoutException, httpx.RequestError) as exc:
                if state.emitted_any or attempt >= max_retries:
                    raise BackendUnavailableError(describe_backend_failure(exc), cause=exc) from exc
                delay = await self._sleep_backoff(attempt=attempt, retry_after_ms=None)
                logger.warning("chat request failed (%s); retrying in %.2fs (attempt %d)", exc, delay, attempt + 1)
                attempt += 1
            except (ContextLengthExceededError, EmptyResponseError) as exc:
                raise BackendUnavailableError(describe_backend_failure(exc), cause=exc) from exc

    async def _stream_once(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        state: "_ReplyState",
        on_delta: Optional[DeltaHook],
    ) -> None:
        parser = ChatCompletionsSseParser()
        async with client.stream("POST", self._endpoint(), json=payload, headers=headers) as resp:
            # 非 2xx 时先读取 body，保证 HTTPStatusError 可解析 {"error":{"message":...}}
            if resp.status_code >= 400:
                try:
                    await resp.aread()
                except httpx.HTTPError:
                    logger.debug("failed to read error body", exc_info=True)
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                for ev in parser.feed_data(line[len("data:") :].strip()):
                    state.apply(ev.type, text=ev.text, total=ev.total_tokens, completion=ev.completion_tokens)
                    if ev.type == "text_delta" and ev.text and on_delta is not None:
                        on_delta(ev.text)
                        state.rendered = True
            for ev in parser.finish():
                state.apply(ev.type)

    async def _request_once(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        state: "_ReplyState",
    ) -> None:
        resp = await client.post(self._endpoint(), json=payload, headers=headers)
        resp.raise_for_status()
        try:
            obj = resp.json()
        except ValueError as exc:
            raise EmptyResponseError("response is not valid JSON") from exc
        choices = obj.get("choices") if isinstance(obj, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise EmptyResponseError("response has no choices")
        choice = choices[0]
        if choice.get("finish_reason") == "length":
            raise ContextLengthExceededError("context_length_exceeded")
        message = choice.get("message")
        if not isinstance(message, dict):
            raise EmptyResponseError("response has no message")
        content = message.get("content")
        state.apply("text_delta", text=content if isinstance(content, str) else "")
        usage = usage_event(obj)
        if usage is not None:
            state.apply("usage", total=usage.total_tokens, completion=usage.completion_tokens)


class _ReplyState:
    """单次请求尝试的累积状态（文本、usage、耗时）。"""

    def __init__(self) -> None:
        self.started = time.monotonic()
        self.parts: List[str] = []
        self.total_tokens: Optional[int] = None
        self.completion_tokens: Optional[int] = None
        self.rendered = False
        self.finished_at: Optional[float] = None

    @property
    def emitted_any(self) -> bool:
        return bool(self.parts)

    def apply(
        self,
        kind: str,
        *,
        text: Optional[str] = None,
        total: Optional[int] = None,
        completion: Optional[int] = None,
    ) -> None:
        if kind == "text_delta" and text:
            self.parts.append(text)
        elif kind == "usage":
            if total is not None:
                self.total_tokens = total
            if completion is not None:
                self.completion_tokens = completion
        self.finished_at = time.monotonic()

    def to_reply(self) -> AssistantReply:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return AssistantReply(
            text="".join(self.parts),
            rendered=self.rendered,
            total_tokens=self.total_tokens,
            completion_tokens=self.completion_tokens,
            generation_duration_ms=max(0.0, (end - self.started) * 1000.0),
        )
