"""
LLM 错误类型（可分类、可回归）。

说明：
- 这些异常在 backend 内部产生，最终会被包装为 `BackendUnavailableError` 抛出；
- `run_errors.classify_backend_failure` 依据 `cause` 做稳定分类。
"""

from __future__ import annotations

from yips_agent.core.errors import LlmError


class ContextLengthExceededError(LlmError):
    """
    上下文长度超限（finish_reason=length 或 provider 明确报错）。

    说明：
    - 重试同一请求通常无法解决；上层可选择压缩历史后重试。
    """


class EmptyResponseError(LlmError):
    """非 streaming 响应缺少 `choices[0].message`。"""
