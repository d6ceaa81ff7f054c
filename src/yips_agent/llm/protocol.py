"""
LLM 协议：AssistantReply / AssistantBackend。

说明：
- turn engine 只依赖 `AssistantBackend.complete()`：给定消息列表，返回一次完整的 assistant 回复；
- streaming 时 backend 可通过 `on_delta` 增量渲染文本，并在回复中标记 `rendered=True`；
- 失败时抛 `BackendUnavailableError`（唯一允许穿越 turn 边界的异常）。
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from yips_agent.core.contracts import Message

DeltaHook = Callable[[str], None]


class AssistantReply(BaseModel):
    """
    一次 assistant 回复。

    字段：
    - text：完整回复文本
    - rendered：文本是否已在 streaming 过程中渲染给用户
    - total_tokens / completion_tokens：backend 报告的 usage（未报告为 None）
    - generation_duration_ms：生成耗时（毫秒；未知为 None）
    """

    model_config = ConfigDict(extra="forbid")

    text: str
    rendered: bool = False
    total_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    generation_duration_ms: Optional[float] = None


@runtime_checkable
class AssistantBackend(Protocol):
    """Assistant backend 抽象。"""

    async def complete(
        self,
        messages: List[Message],
        *,
        stream: bool = True,
        on_delta: Optional[DeltaHook] = None,
    ) -> AssistantReply:
        """
        请求一次 assistant 回复。

        参数：
        - messages：完整请求消息（system prompt + 历史）
        - stream：是否使用 streaming
        - on_delta：streaming 文本增量回调

        异常：
        - BackendUnavailableError：网络/HTTP/协议失败
        """

        ...
