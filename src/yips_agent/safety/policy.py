"""
Risk Gate（纯函数风险评估）。

输入一个 ToolCall 与 workspace root，输出 `RiskAssessment{level, reasons, resolved_path}`：
- `run_command`：解析 `cwd`（默认 `.`），并用可插拔的命令分类器给命令文本打标签；
- 带路径的工具：解析 `path`（默认 `.`），判断是否越出 workspace；
- `apply_file_change`：不携带路径，评估为 auto（写入目标在 apply 时再次校验）。

等级：
- destructive 且越界 → deny
- 两者之一 → confirm
- 都不是 → auto

约束：
- 无副作用（不读写文件、不执行命令）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Literal, Sequence

from yips_agent.core.utils import is_within_workspace, resolve_in_workspace
from yips_agent.tools.protocol import ApplyFileChangeCall, RunCommandCall, ToolCall

RiskLevel = Literal["auto", "confirm", "deny"]

REASON_DESTRUCTIVE = "destructive"
REASON_OUTSIDE_WORKING_ZONE = "outside-working-zone"

CommandClassifier = Callable[[str], List[str]]

DESTRUCTIVE_COMMAND_PATTERNS: Sequence[re.Pattern[str]] = (
    re.compile(r"(^|\s)rm\s+-rf(\s|$)"),
    re.compile(r"(^|\s)rm\s+-fr(\s|$)"),
    re.compile(r"(^|\s)mkfs(\.|\s|$)"),
    re.compile(r"(^|\s)dd\s+if="),
    re.compile(r"(^|\s)reboot(\s|$)"),
    re.compile(r"(^|\s)shutdown(\s|$)"),
    re.compile(r"(^|\s)poweroff(\s|$)"),
    re.compile(r"(^|\s)halt(\s|$)"),
)


@dataclass(frozen=True)
class RiskAssessment:
    """风险评估输出。"""

    level: RiskLevel
    reasons: List[str] = field(default_factory=list)
    resolved_path: str = ""

    @property
    def destructive(self) -> bool:
        return REASON_DESTRUCTIVE in self.reasons

    @property
    def outside_working_zone(self) -> bool:
        return REASON_OUTSIDE_WORKING_ZONE in self.reasons


def default_command_classifier(command: str) -> List[str]:
    """
    默认命令分类器：命中任一破坏性模式时返回 `["destructive"]`。

    说明：
    - 仅做最小正则启发式（递归删除、格式化、裸盘写入、关机类命令）；
    - 调用方可注入自己的分类器（返回 reason 标签列表）。
    """

    text = command or ""
    if any(p.search(text) for p in DESTRUCTIVE_COMMAND_PATTERNS):
        return [REASON_DESTRUCTIVE]
    return []


def build_command_classifier(extra_patterns: Sequence[str] = ()) -> CommandClassifier:
    """
    构造命令分类器：内置破坏性模式 + 额外正则（配置项 `safety.extra_destructive_patterns`）。

    异常：
    - re.error：额外正则无法编译
    """

    if not extra_patterns:
        return default_command_classifier
    compiled = [re.compile(p) for p in extra_patterns]

    def _classify(command: str) -> List[str]:
        tags = default_command_classifier(command)
        if not tags and any(p.search(command or "") for p in compiled):
            tags = [REASON_DESTRUCTIVE]
        return tags

    return _classify


def _level_for(reasons: Sequence[str]) -> RiskLevel:
    destructive = REASON_DESTRUCTIVE in reasons
    outside = REASON_OUTSIDE_WORKING_ZONE in reasons
    if destructive and outside:
        return "deny"
    if destructive or outside:
        return "confirm"
    return "auto"


def assess_command_risk(
    command: str,
    cwd: str,
    workspace_root: Path,
    *,
    command_classifier: CommandClassifier = default_command_classifier,
) -> RiskAssessment:
    """评估一条 shell 命令（命令文本 + 工作目录）的风险。"""

    resolved = resolve_in_workspace(workspace_root, (cwd or ".").strip() or ".")
    reasons: List[str] = []
    for tag in command_classifier(command) or []:
        if tag not in reasons:
            reasons.append(tag)
    if not is_within_workspace(workspace_root, resolved):
        reasons.append(REASON_OUTSIDE_WORKING_ZONE)
    return RiskAssessment(level=_level_for(reasons), reasons=reasons, resolved_path=str(resolved))


def assess_path_risk(path: str, workspace_root: Path) -> RiskAssessment:
    """评估一个路径参数是否越出 workspace。"""

    resolved = resolve_in_workspace(workspace_root, (path or ".").strip() or ".")
    reasons = [] if is_within_workspace(workspace_root, resolved) else [REASON_OUTSIDE_WORKING_ZONE]
    return RiskAssessment(level=_level_for(reasons), reasons=reasons, resolved_path=str(resolved))


def assess_action_risk(
    call: ToolCall,
    workspace_root: Path,
    *,
    command_classifier: CommandClassifier = default_command_classifier,
) -> RiskAssessment:
    """
    对单个 ToolCall 做风险评估（纯函数）。

    参数：
    - call：已校验的工具调用
    - workspace_root：会话的 workspace 根目录
    - command_classifier：命令文本分类器（返回 reason 标签）
    """

    if isinstance(call, RunCommandCall):
        return assess_command_risk(
            call.arguments.command,
            call.arguments.cwd,
            workspace_root,
            command_classifier=command_classifier,
        )
    if isinstance(call, ApplyFileChangeCall):
        return RiskAssessment(level="auto", reasons=[], resolved_path=str(Path(workspace_root).resolve()))
    path = getattr(call.arguments, "path", ".")
    return assess_path_risk(path if isinstance(path, str) else ".", workspace_root)
