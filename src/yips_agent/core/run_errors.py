"""
Backend 失败错误类型化（RunErrorKind / RunError）。

说明：
- turn engine 只会把 `BackendUnavailableError` 抛给调用方；
- 调用方（交互式 CLI / headless 宿主）用 `classify_backend_failure` 得到稳定分类，
  用 `render_request_failure` 得到面向用户的一行文本（`Request failed: ...`）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from yips_agent.core.errors import BackendUnavailableError, FrameworkError
from yips_agent.llm.errors import ContextLengthExceededError, EmptyResponseError

REQUEST_FAILED_PREFIX = "Request failed: "


class RunErrorKind(str, Enum):
    """backend 失败的稳定错误分类（机器可消费）。"""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"

    CONFIG_ERROR = "config_error"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    LLM_ERROR = "llm_error"

    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RunError:
    """
    RunError：结构化 backend 失败。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息（不得包含 secrets）
    - retryable：是否建议上层重试
    - retry_after_ms：可选；建议的重试等待毫秒数（429 + Retry-After）
    - details：可选；结构化上下文
    """

    error_kind: RunErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为稳定字段名的 payload dict。"""

        out: Dict[str, Any] = {
            "error_kind": self.error_kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after_ms is not None:
            out["retry_after_ms"] = int(self.retry_after_ms)
        if self.details:
            out["details"] = dict(self.details)
        return out


def _classify_http_status(exc: httpx.HTTPStatusError, message: str) -> RunError:
    code = int(exc.response.status_code)
    kind = RunErrorKind.HTTP_ERROR
    retryable = False
    retry_after_ms: Optional[int] = None
    if code in (401, 403):
        kind = RunErrorKind.AUTH_ERROR
    elif code == 429:
        kind = RunErrorKind.RATE_LIMITED
        retryable = True
        ra = exc.response.headers.get("Retry-After")
        if ra:
            try:
                sec = int(str(ra).strip())
            except (ValueError, TypeError):
                sec = 0
            if sec > 0:
                retry_after_ms = sec * 1000
    elif 500 <= code <= 599:
        kind = RunErrorKind.SERVER_ERROR
        retryable = True
    return RunError(
        error_kind=kind,
        message=message,
        retryable=retryable,
        retry_after_ms=retry_after_ms,
        details={"status_code": code},
    )


def classify_backend_failure(exc: BaseException) -> RunError:
    """
    将 backend 异常映射为结构化 RunError。

    参数：
    - exc：通常为 `BackendUnavailableError`；会优先依据其 `cause` 分类

    约束：
    - message 取自异常文本；长度上限 800 字符
    """

    message = str(getattr(exc, "message", None) or exc or type(exc).__name__)
    if len(message) > 800:
        message = message[:800] + "...<truncated>"

    cause: BaseException = exc
    if isinstance(exc, BackendUnavailableError) and exc.cause is not None:
        cause = exc.cause

    if isinstance(cause, httpx.HTTPStatusError):
        return _classify_http_status(cause, message)
    if isinstance(cause, httpx.TimeoutException):
        return RunError(error_kind=RunErrorKind.TIMEOUT, message=message, retryable=True)
    if isinstance(cause, httpx.RequestError):
        return RunError(error_kind=RunErrorKind.NETWORK_ERROR, message=message, retryable=True)
    if isinstance(cause, ContextLengthExceededError):
        return RunError(error_kind=RunErrorKind.CONTEXT_LENGTH_EXCEEDED, message=message)
    if isinstance(cause, EmptyResponseError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message, retryable=True)
    if isinstance(cause, FrameworkError):
        return RunError(
            error_kind=RunErrorKind.CONFIG_ERROR,
            message=message,
            details={"framework_code": cause.code},
        )
    if isinstance(cause, BackendUnavailableError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=message)
    return RunError(error_kind=RunErrorKind.UNKNOWN, message=message)


def render_request_failure(exc: BaseException) -> str:
    """返回面向用户的失败文本：`Request failed: <message>`。"""

    return REQUEST_FAILED_PREFIX + classify_backend_failure(exc).message
