"""
LLM backend（OpenAI-compatible chat.completions）。

包含：
- SSE parser（文本增量 + usage）
- httpx backend（streaming / 非 streaming，带退避重试）
- 可离线回归的 Fake backend
"""

from __future__ import annotations

from yips_agent.llm.chat_sse import ChatCompletionsSseParser, ChatStreamEvent
from yips_agent.llm.fake import FakeAssistantBackend, FakeAssistantCall
from yips_agent.llm.openai_chat import ChatCompletionsBackend
from yips_agent.llm.protocol import AssistantBackend, AssistantReply

__all__ = [
    "AssistantBackend",
    "AssistantReply",
    "ChatCompletionsBackend",
    "ChatCompletionsSseParser",
    "ChatStreamEvent",
    "FakeAssistantBackend",
    "FakeAssistantCall",
]
