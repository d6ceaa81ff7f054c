"""
内部错误分类（异常类型）。

说明：
- 单次 action 的失败不抛异常，而是表示为 `status=error` 的结果（见 `yips_agent.tools.protocol`）；
- 能穿越 turn 边界的异常只有 `BackendUnavailableError`（backend 请求失败），由调用方负责渲染；
- 配置/输入错误使用 `FrameworkError`/`UserError`（稳定英文 code + message + details）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class YipsAgentError(Exception):
    """内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可用于配置校验报告）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(YipsAgentError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class LlmError(YipsAgentError):
    """LLM 通信/协议错误（网络、限流、wire 解析等）。"""


class BackendUnavailableError(LlmError):
    """
    Backend 请求失败（BackendFailure）。

    说明：
    - 这是唯一允许穿越 turn 边界的异常类型；
    - `cause` 保留原始异常（例如 httpx 的 HTTPStatusError），便于 `run_errors` 做分类。
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        """
        创建 backend 失败异常。

        参数：
        - `message`：可读错误信息（不得包含 API key）
        - `cause`：可选；底层异常
        """

        super().__init__(message)
        self.message = message
        self.cause = cause
