"""
Fake assistant backend（离线回归夹具）。

用途：
- 在不依赖真实模型/网络的情况下，回归 turn engine 的编排逻辑（envelope → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from yips_agent.core.contracts import Message
from yips_agent.llm.protocol import AssistantReply, DeltaHook

ScriptedReply = Union[str, AssistantReply, BaseException]


@dataclass(frozen=True)
class FakeAssistantCall:
    """一次 `complete(...)` 调用的记录（用于断言请求内容）。"""

    messages: List[Message]
    stream: bool


class FakeAssistantBackend:
    """
    用脚本化回复序列模拟 assistant backend。

    说明：
    - 每次 `complete(...)` 消耗一个条目：str 视为纯文本回复；异常实例会被直接抛出；
    - `render_deltas=True` 时，streaming 请求会把整段文本作为一次 delta 回调并标记 rendered；
    - 序列耗尽时抛 `AssertionError`（测试脚本写少了）。
    """

    def __init__(self, replies: Sequence[ScriptedReply], *, render_deltas: bool = False) -> None:
        self._replies = list(replies)
        self._idx = 0
        self._render_deltas = render_deltas
        self.calls: List[FakeAssistantCall] = []

    @property
    def remaining(self) -> int:
        return len(self._replies) - self._idx

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        stream: bool = True,
        on_delta: Optional[DeltaHook] = None,
    ) -> AssistantReply:
        self.calls.append(FakeAssistantCall(messages=list(messages), stream=stream))
        if self._idx >= len(self._replies):
            raise AssertionError("FakeAssistantBackend replies exhausted")
        item = self._replies[self._idx]
        self._idx += 1

        if isinstance(item, BaseException):
            raise item
        reply = item if isinstance(item, AssistantReply) else AssistantReply(text=item)
        if stream and self._render_deltas and on_delta is not None and reply.text:
            on_delta(reply.text)
            reply = reply.model_copy(update={"rendered": True})
        return reply
