"""
Turn engine：一次 turn 的轮次循环（请求 → 解析 → 执行 → 回注 → 继续）。

状态：
- AwaitingAssistant → HasActions → AwaitingAssistant（循环）
- AwaitingAssistant → NoActions → Done（finished=True）
- 任意状态 → 轮次预算耗尽（finished=False + warning）

约束：
- 每个 turn 同一时刻只有一个 backend 请求或一个 action 在执行；
- 历史只追加；
- 唯一会穿越 turn 边界的异常是 backend 失败（`BackendUnavailableError`），由调用方渲染。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from yips_agent.core.action_runner import execute_round_actions
from yips_agent.core.contracts import AgentEvent, EventHook, Message, TurnOutcome
from yips_agent.core.loop_controller import LoopController
from yips_agent.core.tokens import compute_tokens_per_second, estimate_conversation_tokens, estimate_text_tokens
from yips_agent.llm.protocol import AssistantReply
from yips_agent.protocol.envelope import parse_agent_envelope
from yips_agent.tools.protocol import SkillExecutor, SubagentExecutor, ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 6
DEFAULT_FAILURE_PIVOT_THRESHOLD = 2

PIVOT_SYSTEM_MESSAGE = (
    "Automatic pivot: consecutive tool failures detected. "
    "Try a different approach, use different tools, or ask the user for clarification."
)
PIVOT_WARNING = "Consecutive tool failures detected. Attempting an alternative approach."


def max_rounds_warning(max_rounds: int) -> str:
    """轮次预算耗尽时的 warning 文本（包含实际配置的上限）。"""

    return f"Stopped tool chaining after max depth ({max_rounds} rounds)."


@dataclass
class TurnDependencies:
    """
    turn engine 的外部依赖（全部可注入，便于离线测试）。

    字段：
    - request_assistant：基于当前历史请求一次 assistant 回复（调用方负责组装 system prompt）
    - tool_executor：工具执行器（通常为 `GatedToolExecutor`）
    - skill_executor / subagent_executor：可选；缺失时合成 error 结果 + warning
    - emit：可选；事件观察者
    - estimate_completion_tokens / estimate_history_tokens / compute_tokens_per_second：token 口径策略
    - turn_id：可选；写入事件的 turn 标识
    """

    request_assistant: Callable[[], Awaitable[AssistantReply]]
    tool_executor: ToolExecutor
    skill_executor: Optional[SkillExecutor] = None
    subagent_executor: Optional[SubagentExecutor] = None
    emit: Optional[EventHook] = None
    estimate_completion_tokens: Callable[[str], int] = estimate_text_tokens
    estimate_history_tokens: Callable[[Sequence[Message]], int] = estimate_conversation_tokens
    compute_tokens_per_second: Callable[[float, float], Optional[float]] = compute_tokens_per_second
    turn_id: Optional[str] = None

    def notify(self, event: AgentEvent) -> None:
        if self.emit is not None:
            self.emit(event)

    def warn(self, code: str, message: str) -> None:
        logger.debug("turn warning [%s]: %s", code, message)
        self.notify(AgentEvent.warning(message, code=code, turn_id=self.turn_id))


async def run_agent_turn(
    history: List[Message],
    deps: TurnDependencies,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    failure_pivot_threshold: int = DEFAULT_FAILURE_PIVOT_THRESHOLD,
) -> TurnOutcome:
    """
    运行一个 turn。

    参数：
    - history：会话历史（就地追加 assistant 文本与结果消息）
    - deps：外部依赖
    - max_rounds：轮次上限（每轮一次 assistant 请求）
    - failure_pivot_threshold：连续“工具全失败”轮次达到该值时插入 pivot 提示

    返回：
    - TurnOutcome

    异常：
    - BackendUnavailableError：`request_assistant` 失败时原样抛出
    """

    loop = LoopController(max_rounds=max_rounds, failure_pivot_threshold=failure_pivot_threshold)
    finished = False
    tokens_per_second: Optional[float] = None
    used_tokens: Optional[int] = None

    while not loop.budget_exhausted():
        round_no = loop.next_round()
        reply = await deps.request_assistant()
        parsed = parse_agent_envelope(reply.text)

        for message in parsed.warnings:
            deps.warn("protocol_warning", message)
        for message in parsed.errors:
            deps.warn("protocol_parse_error", message)
            history.append(Message(role="system", content=f"Protocol parse error: {message}"))

        text = parsed.assistant_text.strip()
        if text:
            history.append(Message(role="assistant", content=text))
            deps.notify(AgentEvent.assistant_text(text, rendered=reply.rendered, turn_id=deps.turn_id))

        if reply.completion_tokens is not None and reply.completion_tokens > 0:
            completion_tokens = reply.completion_tokens
        else:
            completion_tokens = deps.estimate_completion_tokens(reply.text)
        tokens_per_second = deps.compute_tokens_per_second(completion_tokens, reply.generation_duration_ms or 0)
        if reply.total_tokens is not None and reply.total_tokens >= 0:
            used_tokens = reply.total_tokens
        else:
            used_tokens = deps.estimate_history_tokens(history)

        if not parsed.has_actions:
            finished = True
            break

        results = await execute_round_actions(
            parsed,
            tool_executor=deps.tool_executor,
            skill_executor=deps.skill_executor,
            subagent_executor=deps.subagent_executor,
            warn=deps.warn,
        )
        history.extend(results.history_messages())

        if loop.record_round(results.tool_results):
            history.append(Message(role="system", content=PIVOT_SYSTEM_MESSAGE))
            deps.warn("automatic_pivot", PIVOT_WARNING)

        deps.notify(AgentEvent.round_completed(round_no, turn_id=deps.turn_id))

    if not finished:
        deps.warn("max_depth", max_rounds_warning(max_rounds))

    return TurnOutcome(
        finished=finished,
        rounds=loop.rounds,
        used_tokens_exact=used_tokens,
        latest_output_tokens_per_second=tokens_per_second,
    )
