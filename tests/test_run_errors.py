from __future__ import annotations

import httpx

from yips_agent.core.errors import BackendUnavailableError, UserError
from yips_agent.core.run_errors import RunErrorKind, classify_backend_failure, render_request_failure
from yips_agent.llm.errors import ContextLengthExceededError


def _status_error(code: int, headers=None) -> httpx.HTTPStatusError:
    req = httpx.Request("POST", "http://example.test/v1/chat/completions")
    resp = httpx.Response(code, headers=headers or {}, request=req)
    return httpx.HTTPStatusError("boom", request=req, response=resp)


def _wrap(cause: BaseException, message: str = "failed") -> BackendUnavailableError:
    return BackendUnavailableError(message, cause=cause)


def test_classify_http_statuses() -> None:
    assert classify_backend_failure(_wrap(_status_error(401))).error_kind == RunErrorKind.AUTH_ERROR
    assert classify_backend_failure(_wrap(_status_error(404))).error_kind == RunErrorKind.HTTP_ERROR

    server = classify_backend_failure(_wrap(_status_error(502)))
    assert server.error_kind == RunErrorKind.SERVER_ERROR
    assert server.retryable is True
    assert server.details == {"status_code": 502}


def test_rate_limited_carries_retry_after() -> None:
    err = classify_backend_failure(_wrap(_status_error(429, {"Retry-After": "3"})))
    assert err.error_kind == RunErrorKind.RATE_LIMITED
    assert err.retry_after_ms == 3000
    assert err.to_payload()["retry_after_ms"] == 3000


def test_classify_transport_and_protocol_failures() -> None:
    req = httpx.Request("POST", "http://example.test")
    assert classify_backend_failure(_wrap(httpx.ReadTimeout("t", request=req))).error_kind == RunErrorKind.TIMEOUT
    assert classify_backend_failure(_wrap(httpx.ConnectError("c", request=req))).error_kind == RunErrorKind.NETWORK_ERROR
    assert (
        classify_backend_failure(_wrap(ContextLengthExceededError("x"))).error_kind
        == RunErrorKind.CONTEXT_LENGTH_EXCEEDED
    )
    assert classify_backend_failure(_wrap(UserError("bad"))).error_kind == RunErrorKind.CONFIG_ERROR
    assert classify_backend_failure(BackendUnavailableError("no cause")).error_kind == RunErrorKind.LLM_ERROR
    assert classify_backend_failure(RuntimeError("odd")).error_kind == RunErrorKind.UNKNOWN


def test_render_request_failure() -> None:
    assert render_request_failure(_wrap(_status_error(503), "HTTP 503 from server")) == "Request failed: HTTP 503 from server"


def test_long_messages_are_truncated() -> None:
    err = classify_backend_failure(BackendUnavailableError("x" * 2000))
    assert len(err.message) == 800 + len("...<truncated>")
