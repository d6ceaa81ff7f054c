"""
AgentSession：单个会话的运行时装配。

每个会话独占：
- 一份历史（list[Message]）
- 一个 StagedChangeStore（token 不跨会话共享）
- 一个 SafetyGate（含会话级审批缓存）与门禁工具执行器
- skill 执行器与子代理执行器
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from yips_agent.config.loader import YipsConfig
from yips_agent.core.contracts import EventHook, Message, TurnOutcome
from yips_agent.core.subagents import SubagentRunner, build_subagent_executor
from yips_agent.core.turn_engine import TurnDependencies, run_agent_turn
from yips_agent.llm.protocol import AssistantBackend, AssistantReply, DeltaHook
from yips_agent.protocol.system_prompt import compose_request_messages
from yips_agent.safety.approvals import ApprovalProvider
from yips_agent.safety.gate import UNATTENDED_DENIAL, GatedToolExecutor, SafetyGate
from yips_agent.safety.policy import build_command_classifier
from yips_agent.skills.runner import SkillRunner
from yips_agent.tools.executor import WorkspaceToolExecutor
from yips_agent.tools.file_change_store import PostWriteHook, StagedChangeStore
from yips_agent.tools.protocol import SkillExecutor

logger = logging.getLogger(__name__)


class AgentSession:
    """
    会话级运行时。

    参数：
    - config：已校验的 YipsConfig
    - backend：assistant backend
    - workspace_root：工具路径解析与越界判断的基准
    - approval_provider：可选；None 表示无人值守（confirm 级别动作一律拒绝）
    - project_context：可选；每次（非子代理）请求注入的项目上下文 system 消息
    - skill_executor：可选；None 时按 `enable_skills` 决定是否创建默认 SkillRunner
    - enable_skills：是否启用 skill（False 时 skill 调用得到 unavailable 结果）
    - post_write_hook：可选；staged change apply 成功后调用
    - emit：可选；事件观察者
    - on_delta：可选；streaming 文本增量回调
    - unattended_denial_output：无人值守拒绝时回注给模型的文本
    - clock：StagedChangeStore 的时间源（测试可注入）
    """

    def __init__(
        self,
        *,
        config: YipsConfig,
        backend: AssistantBackend,
        workspace_root: Path,
        approval_provider: Optional[ApprovalProvider] = None,
        project_context: Optional[str] = None,
        skill_executor: Optional[SkillExecutor] = None,
        enable_skills: bool = True,
        post_write_hook: Optional[PostWriteHook] = None,
        emit: Optional[EventHook] = None,
        on_delta: Optional[DeltaHook] = None,
        unattended_denial_output: str = UNATTENDED_DENIAL,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._backend = backend
        self._root = Path(workspace_root).resolve()
        self._project_context = project_context
        self._emit = emit
        self._on_delta = on_delta
        self._history: List[Message] = []
        self._turns = 0

        self._store = StagedChangeStore(
            ttl_sec=config.staged_changes.ttl_sec,
            max_entries=config.staged_changes.max_entries,
            clock=clock or time.time,
            post_write_hook=post_write_hook,
        )
        self._gate = SafetyGate(
            workspace_root=self._root,
            approval_provider=approval_provider,
            approval_timeout_ms=config.safety.approval_timeout_ms,
            command_classifier=build_command_classifier(config.safety.extra_destructive_patterns),
            unattended_denial_output=unattended_denial_output,
        )
        self._tools = GatedToolExecutor(
            inner=WorkspaceToolExecutor(
                workspace_root=self._root,
                store=self._store,
                max_output_bytes=config.tools.max_output_bytes,
            ),
            gate=self._gate,
        )
        if skill_executor is None and enable_skills:
            skill_executor = SkillRunner(
                workspace_root=self._root,
                http_timeout_sec=config.tools.http_timeout_sec,
                max_output_bytes=config.tools.max_output_bytes,
            )
        self._skills = skill_executor
        self._subagents: Optional[SubagentRunner] = build_subagent_executor(
            backend=backend,
            tool_executor=self._tools,
            skill_executor=self._skills,
            max_rounds=config.run.subagent_max_rounds,
            max_depth=config.run.max_subagent_depth,
            failure_pivot_threshold=config.run.failure_pivot_threshold,
        )

    @property
    def history(self) -> List[Message]:
        return self._history

    @property
    def store(self) -> StagedChangeStore:
        return self._store

    @property
    def workspace_root(self) -> Path:
        return self._root

    async def _request_assistant(self) -> AssistantReply:
        messages = compose_request_messages(self._history, self._project_context)
        return await self._backend.complete(messages, stream=self._config.llm.stream, on_delta=self._on_delta)

    async def run_turn(self, user_text: str) -> TurnOutcome:
        """
        追加一条 user 消息并运行一个 turn。

        异常：
        - BackendUnavailableError：backend 请求失败（历史中已保留 user 消息）
        """

        self._turns += 1
        turn_id = f"turn_{self._turns}"
        self._history.append(Message(role="user", content=user_text))
        deps = TurnDependencies(
            request_assistant=self._request_assistant,
            tool_executor=self._tools,
            skill_executor=self._skills,
            subagent_executor=self._subagents,
            emit=self._emit,
            turn_id=turn_id,
        )
        outcome = await run_agent_turn(
            self._history,
            deps,
            max_rounds=self._config.run.max_rounds,
            failure_pivot_threshold=self._config.run.failure_pivot_threshold,
        )
        logger.debug("%s finished=%s rounds=%d", turn_id, outcome.finished, outcome.rounds)
        return outcome
