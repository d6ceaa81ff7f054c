"""工具协议 system prompt 与请求消息组装。"""

from __future__ import annotations

from typing import List, Optional, Sequence

from yips_agent.core.contracts import Message
from yips_agent.tools.protocol import SKILL_NAMES, TOOL_NAMES

TOOL_PROTOCOL_SYSTEM_PROMPT = "\n".join(
    [
        "Tool protocol:",
        "When you need tools, skills, or subagents, emit exactly one fenced JSON block.",
        "Preferred format:",
        "```yips-agent",
        '{"assistant_text":"optional","actions":[{"type":"tool","id":"t1","name":"read_file","arguments":{"path":"README.md"}}]}',
        "```",
        "Rules:",
        "- Use exactly one block per assistant message.",
        "- Keep action ids unique within a message.",
        f"- Allowed tools: {', '.join(TOOL_NAMES)}.",
        f"- Allowed skills: {', '.join(SKILL_NAMES)}.",
        "- File writes are two-phase: preview_write_file returns a token, apply_file_change with that token writes it.",
        "- Subagent actions use type 'subagent' with fields: id, task, optional context, optional allowed_tools, optional max_rounds.",
        "- If no action is needed, answer normally without a tool block.",
    ]
)


def compose_request_messages(history: Sequence[Message], project_context: Optional[str] = None) -> List[Message]:
    """
    组装一次 backend 请求的消息列表。

    顺序：
    - 工具协议 system prompt
    - 可选的项目上下文（subagent 请求不注入）
    - 会话历史
    """

    out = [Message(role="system", content=TOOL_PROTOCOL_SYSTEM_PROMPT)]
    if project_context and project_context.strip():
        out.append(Message(role="system", content=project_context.strip()))
    out.extend(history)
    return out
