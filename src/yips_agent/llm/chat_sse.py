"""
Chat Completions Streaming SSE 解析器（纯文本回复）。

实现边界：
- 支持终止哨兵：`[DONE]` 与 `DONE`
- 支持 `choices[].delta.content` 文本增量（str 或 content blocks）
- 支持末尾 chunk 的 `usage`（`stream_options.include_usage`）
- `finish_reason="length"` 视为上下文超限
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from yips_agent.llm.errors import ContextLengthExceededError


@dataclass(frozen=True)
class ChatStreamEvent:
    """
    Chat streaming 解析输出事件。

    type:
    - `text_delta`：assistant 文本增量
    - `usage`：token 用量（total_tokens / completion_tokens）
    - `completed`：流已完成（stop/[DONE]/EOF）
    """

    type: str
    text: Optional[str] = None
    total_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    finish_reason: Optional[str] = None


def usage_event(obj: Dict[str, Any]) -> Optional[ChatStreamEvent]:
    """从响应对象的 `usage` 字段构造 usage 事件（字段缺失或类型不符返回 None）。"""

    usage = obj.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    completion = usage.get("completion_tokens")
    return ChatStreamEvent(
        type="usage",
        total_tokens=total if isinstance(total, int) else None,
        completion_tokens=completion if isinstance(completion, int) else None,
    )


class ChatCompletionsSseParser:
    """
    OpenAI-compatible chat.completions SSE parser（仅处理 data: JSON 的 payload）。

    用法：
    - 每次收到一条 `data: ...` 的 data 字符串，调用 `feed_data(data)`，获取 0..N 个事件
    - 流结束时调用 `finish()`，保证最终会得到 `completed` 事件
    """

    def __init__(self) -> None:
        self._completed_sent = False

    def feed_data(self, data: str) -> List[ChatStreamEvent]:
        """
        处理单条 SSE data 字符串。

        说明：
        - JSON 解析失败的 data：跳过（返回空列表）
        - `[DONE]` / `DONE`：返回 completed（仅一次）
        """

        data_s = (data or "").strip()
        if not data_s:
            return []

        if data_s in ("[DONE]", "DONE"):
            return self._complete("done")

        try:
            obj = json.loads(data_s)
        except ValueError:
            return []
        if not isinstance(obj, dict):
            return []

        out: List[ChatStreamEvent] = []
        choices = obj.get("choices")
        if isinstance(choices, list):
            for choice in choices:
                if not isinstance(choice, dict):
                    continue
                delta = choice.get("delta") or {}
                if isinstance(delta, dict):
                    out.extend(self._handle_delta(delta))
                finish_reason = choice.get("finish_reason")
                if finish_reason == "length":
                    raise ContextLengthExceededError("context_length_exceeded")

        usage = usage_event(obj)
        if usage is not None:
            out.append(usage)
        return out

    def finish(self) -> List[ChatStreamEvent]:
        """在底层 stream EOF 时调用（某些 provider 不发送 `[DONE]`）。"""

        return self._complete("eof")

    def _complete(self, reason: str) -> List[ChatStreamEvent]:
        if self._completed_sent:
            return []
        self._completed_sent = True
        return [ChatStreamEvent(type="completed", finish_reason=reason)]

    @staticmethod
    def _handle_delta(delta: Dict[str, Any]) -> List[ChatStreamEvent]:
        content = delta.get("content")
        if isinstance(content, str) and content:
            return [ChatStreamEvent(type="text_delta", text=content)]
        out: List[ChatStreamEvent] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str) and text:
                        out.append(ChatStreamEvent(type="text_delta", text=text))
        return out
