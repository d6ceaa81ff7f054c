"""
yips-agent：本地、可调用工具的对话代理核心（Python）。

说明：
- turn 循环：请求 assistant 回复 → 解析 action envelope → 经 Risk Gate 执行 → 回注结果 → 继续；
- 写文件为两阶段（preview 得到 token，apply_file_change 落盘）；
- 子代理委派在隔离历史上递归运行同一 turn 循环。
"""

from __future__ import annotations

from yips_agent.config.loader import YipsConfig, load_config, load_config_dicts
from yips_agent.core.contracts import AgentEvent, Message, TurnOutcome
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.core.headless import HeadlessConductor
from yips_agent.core.session import AgentSession
from yips_agent.core.turn_engine import TurnDependencies, run_agent_turn

__all__ = [
    "AgentEvent",
    "AgentSession",
    "BackendUnavailableError",
    "HeadlessConductor",
    "Message",
    "TurnDependencies",
    "TurnOutcome",
    "YipsConfig",
    "__version__",
    "load_config",
    "load_config_dicts",
    "run_agent_turn",
]

__version__ = "0.1.0"
