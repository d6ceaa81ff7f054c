"""
Action envelope 协议。

包含：
- envelope 解析（fenced / bare 两种形态，宽松降级）
- 工具协议 system prompt 与请求消息组装
"""

from __future__ import annotations

from yips_agent.protocol.envelope import ParsedEnvelope, parse_agent_envelope
from yips_agent.protocol.system_prompt import TOOL_PROTOCOL_SYSTEM_PROMPT, compose_request_messages

__all__ = ["ParsedEnvelope", "TOOL_PROTOCOL_SYSTEM_PROMPT", "compose_request_messages", "parse_agent_envelope"]
