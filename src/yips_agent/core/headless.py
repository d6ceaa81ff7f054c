"""
Headless 多会话宿主（无人值守）。

说明：
- 以 session key 映射到相互独立的 `AgentSession`（历史、staged store、审批缓存均不共享）；
- 不配置 ApprovalProvider：confirm 级别动作一律拒绝；
- backend 失败渲染为 `Request failed: ...`，并作为 assistant 消息写入该会话历史；
- 同一 session key 的消息串行处理；不同 key 之间可并发。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

from yips_agent.config.loader import YipsConfig
from yips_agent.core.contracts import Message
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.core.run_errors import classify_backend_failure, render_request_failure
from yips_agent.core.session import AgentSession
from yips_agent.llm.protocol import AssistantBackend
from yips_agent.safety.gate import UNATTENDED_DENIAL

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "(no response)"


class HeadlessConductor:
    """
    多会话 headless 宿主。

    参数：
    - config：已校验的 YipsConfig
    - backend：所有会话共享的 assistant backend（无会话状态）
    - workspace_root：工具执行的 workspace 根目录
    - project_context：可选；注入每个会话请求的项目上下文
    - enable_skills：是否为会话创建默认 SkillRunner
    """

    def __init__(
        self,
        *,
        config: YipsConfig,
        backend: AssistantBackend,
        workspace_root: Path,
        project_context: Optional[str] = None,
        enable_skills: bool = True,
    ) -> None:
        self._config = config
        self._backend = backend
        self._root = Path(workspace_root)
        self._project_context = project_context
        self._enable_skills = enable_skills
        self._sessions: Dict[str, AgentSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def session(self, key: str) -> AgentSession:
        """返回 key 对应的会话（不存在则创建）。"""

        existing = self._sessions.get(key)
        if existing is not None:
            return existing
        created = AgentSession(
            config=self._config,
            backend=self._backend,
            workspace_root=self._root,
            approval_provider=None,
            project_context=self._project_context,
            enable_skills=self._enable_skills,
            unattended_denial_output=UNATTENDED_DENIAL,
        )
        self._sessions[key] = created
        self._locks[key] = asyncio.Lock()
        return created

    def session_keys(self) -> list[str]:
        return list(self._sessions)

    def dispose(self) -> None:
        """丢弃全部会话状态。"""

        self._sessions.clear()
        self._locks.clear()

    async def handle_message(self, key: str, text: str) -> str:
        """
        处理一条入站消息并返回回复文本。

        返回：
        - 本 turn 最后一条 assistant 文本；没有则为 `(no response)`；
        - backend 失败时为 `Request failed: ...`（同时写入该会话历史）
        """

        session = self.session(key)
        async with self._locks[key]:
            start = len(session.history)
            try:
                await session.run_turn(text)
            except BackendUnavailableError as exc:
                failure = classify_backend_failure(exc)
                logger.warning("session %s: backend request failed (%s)", key, failure.error_kind.value)
                message = render_request_failure(exc)
                session.history.append(Message(role="assistant", content=message))
                return message

            for entry in reversed(session.history[start:]):
                if entry.role == "assistant" and entry.content.strip():
                    return entry.content
            return NO_RESPONSE_TEXT
