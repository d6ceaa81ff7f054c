"""
Action runner：按类别顺序执行一轮中的全部 action，并生成回注历史的结果消息。

执行顺序：
- 先 tool，再 skill，最后 subagent；每个列表内部按给定顺序逐个执行（后续调用可能依赖前序调用）。

缺失执行器：
- skill/subagent 执行器未配置时，不抛异常：为每个调用合成 `status=error` 结果，并发出一条 warning。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from yips_agent.core.contracts import Message
from yips_agent.core.utils import compact_json
from yips_agent.protocol.envelope import ParsedEnvelope
from yips_agent.tools.protocol import (
    SkillExecutor,
    SkillResult,
    SubagentExecutor,
    SubagentResult,
    ToolExecutor,
    ToolResult,
)

SKILL_UNAVAILABLE_OUTPUT = "Skill invocation is unavailable in this runtime."
SUBAGENT_UNAVAILABLE_OUTPUT = "Subagent delegation is unavailable in this runtime."
SKILL_UNAVAILABLE_WARNING = "Skill invocation requested, but no skill runner is configured."
SUBAGENT_UNAVAILABLE_WARNING = "Subagent delegation requested, but no subagent runner is configured."

WarningSink = Callable[[str, str], None]


@dataclass
class RoundResults:
    """一轮 action 的执行结果（按类别分组，保持调用顺序）。"""

    tool_results: List[ToolResult] = field(default_factory=list)
    skill_results: List[SkillResult] = field(default_factory=list)
    subagent_results: List[SubagentResult] = field(default_factory=list)

    def history_messages(self) -> List[Message]:
        """
        生成回注历史的 system 消息：每个实际执行过的类别一条。

        格式：
        - `Tool results: [...]` / `Skill results: [...]` / `Subagent results: [...]`
        - JSON 为紧凑格式，条目为 `ActionResult.to_summary()`
        """

        out: List[Message] = []
        for prefix, results in (
            ("Tool results: ", self.tool_results),
            ("Skill results: ", self.skill_results),
            ("Subagent results: ", self.subagent_results),
        ):
            if results:
                payload = compact_json([r.to_summary() for r in results])
                out.append(Message(role="system", content=prefix + payload))
        return out


async def execute_round_actions(
    parsed: ParsedEnvelope,
    *,
    tool_executor: ToolExecutor,
    skill_executor: Optional[SkillExecutor] = None,
    subagent_executor: Optional[SubagentExecutor] = None,
    warn: Optional[WarningSink] = None,
) -> RoundResults:
    """
    执行一轮中的全部 action。

    参数：
    - parsed：本轮解析出的 envelope
    - tool_executor / skill_executor / subagent_executor：执行器（后两者可缺省）
    - warn：warning 回调 `(code, message)`

    返回：
    - RoundResults（与输入同序同数量）
    """

    def _warn(code: str, message: str) -> None:
        if warn is not None:
            warn(code, message)

    out = RoundResults()

    for call in parsed.tool_calls:
        produced = await tool_executor.execute([call])
        if produced:
            out.tool_results.append(produced[0])
        else:
            out.tool_results.append(ToolResult.error(call.id, call.name, f"Tool call '{call.id}' produced no result."))

    for call in parsed.skill_calls:
        if skill_executor is None:
            _warn("skill_runner_unavailable", SKILL_UNAVAILABLE_WARNING)
            out.skill_results.append(
                SkillResult(call_id=call.id, skill=call.name, status="error", output=SKILL_UNAVAILABLE_OUTPUT)
            )
            continue
        produced_skills = await skill_executor.execute([call])
        if produced_skills:
            out.skill_results.append(produced_skills[0])
        else:
            out.skill_results.append(
                SkillResult(
                    call_id=call.id,
                    skill=call.name,
                    status="error",
                    output=f"Skill call '{call.id}' produced no result.",
                )
            )

    for call in parsed.subagent_calls:
        if subagent_executor is None:
            _warn("subagent_runner_unavailable", SUBAGENT_UNAVAILABLE_WARNING)
            out.subagent_results.append(
                SubagentResult(call_id=call.id, status="error", output=SUBAGENT_UNAVAILABLE_OUTPUT)
            )
            continue
        produced_subagents = await subagent_executor.execute([call])
        if produced_subagents:
            out.subagent_results.append(produced_subagents[0])
        else:
            out.subagent_results.append(
                SubagentResult(call_id=call.id, status="error", output=f"Subagent call '{call.id}' produced no result.")
            )

    return out
