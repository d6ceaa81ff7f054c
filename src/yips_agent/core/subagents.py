"""
子代理（subagent）委派：在隔离历史上递归运行 turn engine。

要点：
- 每个 SubagentCall 使用全新的历史：`[system(范围说明), user(task)]`；
- 复用父级的 backend 与执行器，但：
  - 工具调用先按 `allowed_tools` 过滤（不在白名单内直接 denied，不经过 SafetyGate）；
  - assistant 请求关闭 streaming，且不注入项目上下文；
- 嵌套深度由 `remaining_depth` 显式控制：最后一层不再提供 subagent 执行器；
- 多个 SubagentCall 按顺序逐个完成，父级轮次在全部完成后才继续。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Sequence

from yips_agent.core.contracts import Message
from yips_agent.core.turn_engine import DEFAULT_FAILURE_PIVOT_THRESHOLD, TurnDependencies, run_agent_turn
from yips_agent.llm.protocol import AssistantBackend, AssistantReply
from yips_agent.protocol.system_prompt import compose_request_messages
from yips_agent.safety.gate import GatedToolExecutor
from yips_agent.tools.protocol import SkillExecutor, SubagentCall, SubagentResult

logger = logging.getLogger(__name__)

DEFAULT_SUBAGENT_MAX_ROUNDS = 4
NO_OUTPUT_FALLBACK = "Subagent completed without assistant output."

ScopedRequest = Callable[[List[Message]], Awaitable[AssistantReply]]


def build_subagent_scope_message(call: SubagentCall) -> str:
    """构造子代理历史首条 system 消息（任务、可选上下文、工具白名单、范围约束）。"""

    lines = ["Subagent scope:", f"Task: {call.task}"]
    if call.context:
        lines.append(f"Context: {call.context}")
    if call.allowed_tools is None:
        lines.append("Allowed tools: all available tools")
    else:
        lines.append(f"Allowed tools: {', '.join(call.allowed_tools) if call.allowed_tools else '(none)'}")
    lines.append("Stay focused on the delegated scope and return concise findings.")
    return "\n".join(lines)


def _latest_assistant_text(history: Sequence[Message]) -> Optional[str]:
    for message in reversed(history):
        if message.role == "assistant":
            return message.content
    return None


@dataclass
class SubagentRunner:
    """
    子代理执行器（实现 `SubagentExecutor`）。

    字段：
    - request_assistant：给定隔离历史请求一次回复（不 streaming、不注入项目上下文）
    - tool_executor：父级的门禁工具执行器；按调用派生带白名单的版本
    - skill_executor：可选；直接复用父级
    - default_max_rounds：调用未指定 max_rounds 时的轮次上限
    - remaining_depth：剩余可嵌套层数（>=1）；为 1 时子代理自身不能再委派
    - failure_pivot_threshold：透传给嵌套 turn
    """

    request_assistant: ScopedRequest
    tool_executor: GatedToolExecutor
    skill_executor: Optional[SkillExecutor] = None
    default_max_rounds: int = DEFAULT_SUBAGENT_MAX_ROUNDS
    remaining_depth: int = 1
    failure_pivot_threshold: int = DEFAULT_FAILURE_PIVOT_THRESHOLD

    async def execute(self, calls: Sequence[SubagentCall]) -> List[SubagentResult]:
        """按顺序执行委派，输出与输入同序同数量（永不抛异常）。"""

        results: List[SubagentResult] = []
        for call in calls:
            results.append(await self._run_one(call))
        return results

    async def _run_one(self, call: SubagentCall) -> SubagentResult:
        scoped: List[Message] = [
            Message(role="system", content=build_subagent_scope_message(call)),
            Message(role="user", content=call.task),
        ]
        tools = self.tool_executor
        if call.allowed_tools is not None:
            tools = tools.restricted(call.allowed_tools, scope_label=f"subagent {call.id}")

        child: Optional[SubagentRunner] = None
        if self.remaining_depth > 1:
            child = replace(self, tool_executor=tools, remaining_depth=self.remaining_depth - 1)

        async def _request() -> AssistantReply:
            return await self.request_assistant(scoped)

        deps = TurnDependencies(
            request_assistant=_request,
            tool_executor=tools,
            skill_executor=self.skill_executor,
            subagent_executor=child,
            turn_id=f"subagent:{call.id}",
        )
        max_rounds = call.max_rounds or self.default_max_rounds
        try:
            outcome = await run_agent_turn(
                scoped, deps, max_rounds=max_rounds, failure_pivot_threshold=self.failure_pivot_threshold
            )
        except Exception as exc:
            logger.warning("Subagent %s failed", call.id, exc_info=True)
            return SubagentResult(call_id=call.id, status="error", output=f"Subagent failed: {exc}")

        return SubagentResult(
            call_id=call.id,
            status="ok" if outcome.finished else "timeout",
            output=_latest_assistant_text(scoped) or NO_OUTPUT_FALLBACK,
            metadata={"rounds": outcome.rounds},
        )


def build_subagent_executor(
    *,
    backend: AssistantBackend,
    tool_executor: GatedToolExecutor,
    skill_executor: Optional[SkillExecutor] = None,
    max_rounds: int = DEFAULT_SUBAGENT_MAX_ROUNDS,
    max_depth: int = 1,
    failure_pivot_threshold: int = DEFAULT_FAILURE_PIVOT_THRESHOLD,
) -> Optional[SubagentRunner]:
    """
    构造会话级子代理执行器。

    参数：
    - backend：父级 assistant backend（子代理请求固定 `stream=False`）
    - tool_executor / skill_executor：父级执行器
    - max_rounds：默认轮次上限（`run.subagent_max_rounds`）
    - max_depth：最大嵌套层数（`run.max_subagent_depth`）；<=0 表示禁用委派

    返回：
    - SubagentRunner；max_depth<=0 时返回 None（turn engine 会合成 unavailable 结果）
    """

    if max_depth <= 0:
        return None

    async def _request(history: List[Message]) -> AssistantReply:
        return await backend.complete(compose_request_messages(history, None), stream=False)

    return SubagentRunner(
        request_assistant=_request,
        tool_executor=tool_executor,
        skill_executor=skill_executor,
        default_max_rounds=max_rounds,
        remaining_depth=max_depth,
        failure_pivot_threshold=failure_pivot_threshold,
    )
