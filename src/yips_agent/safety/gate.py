"""统一安全门禁：把 Risk Gate 的评估结果与操作员确认合并为“执行/拒绝”决策。"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from yips_agent.safety.approvals import ApprovalDecision, ApprovalProvider, ApprovalRequest, compute_approval_key
from yips_agent.safety.policy import (
    CommandClassifier,
    RiskAssessment,
    assess_action_risk,
    default_command_classifier,
)
from yips_agent.tools.protocol import RunCommandCall, ToolCall, ToolResult

logger = logging.getLogger(__name__)

RISK_POLICY_DENIAL = "Action denied by risk policy."
USER_DENIAL = "Action denied by user confirmation policy."
UNATTENDED_DENIAL = "Action denied by gateway safety policy."
APPROVAL_TIMEOUT_DENIAL = "Action denied: confirmation timed out."


@dataclass
class GateDecision:
    """安全门禁决策输出。"""

    action: str  # allow|deny
    reason: str
    risk: RiskAssessment
    output: str = ""
    approval_key: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action == "allow"

    def to_denied_result(self, call: ToolCall) -> ToolResult:
        """把拒绝决策转换为 `status=denied` 的 ToolResult。"""

        metadata: Dict[str, Any] = {"riskLevel": self.risk.level, "reasons": list(self.risk.reasons), "gate": self.reason}
        return ToolResult.denied(call.id, call.name, self.output or RISK_POLICY_DENIAL, metadata)


@dataclass
class _SessionApprovals:
    keys: Set[str] = field(default_factory=set)


class SafetyGate:
    """
    统一安全门禁（每个会话一个实例）。

    决策：
    - auto：直接放行
    - deny：不执行，返回 denied
    - confirm：询问 ApprovalProvider；未配置 provider（无人值守）、拒绝、超时或 provider 异常一律 denied
    """

    def __init__(
        self,
        *,
        workspace_root: Path,
        approval_provider: Optional[ApprovalProvider] = None,
        approval_timeout_ms: Optional[int] = None,
        command_classifier: CommandClassifier = default_command_classifier,
        unattended_denial_output: str = UNATTENDED_DENIAL,
    ) -> None:
        """
        参数：
        - workspace_root：会话 workspace 根目录
        - approval_provider：可选；None 表示无人值守（confirm 自动拒绝）
        - approval_timeout_ms：等待确认的上限；None 表示不限制
        - command_classifier：命令文本分类器
        - unattended_denial_output：无人值守拒绝时回注给模型的文本
        """

        self._workspace_root = Path(workspace_root)
        self._provider = approval_provider
        self._approval_timeout_ms = approval_timeout_ms
        self._classifier = command_classifier
        self._unattended_denial_output = unattended_denial_output
        self._approvals = _SessionApprovals()

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    @staticmethod
    def _summarize(call: ToolCall, risk: RiskAssessment) -> tuple[str, Dict[str, Any]]:
        if isinstance(call, RunCommandCall):
            details: Dict[str, Any] = {"command": call.arguments.command, "cwd": risk.resolved_path}
            summary = f"Run command `{call.arguments.command}` in {risk.resolved_path}"
        else:
            details = {"path": risk.resolved_path}
            summary = f"{call.name} on {risk.resolved_path}"
        if risk.reasons:
            summary = f"{summary} ({', '.join(risk.reasons)})"
        return summary, details

    async def evaluate(self, call: ToolCall) -> GateDecision:
        """
        对单个 ToolCall 做门禁决策。

        返回：
        - GateDecision（action=allow/deny；deny 时 output 为回注文本）
        """

        risk = assess_action_risk(call, self._workspace_root, command_classifier=self._classifier)
        if risk.level == "auto":
            return GateDecision(action="allow", reason="auto", risk=risk)
        if risk.level == "deny":
            return GateDecision(action="deny", reason="policy", risk=risk, output=RISK_POLICY_DENIAL)

        summary, details = self._summarize(call, risk)
        approval_key = compute_approval_key(tool=call.name, request=details)
        if approval_key in self._approvals.keys:
            return GateDecision(action="allow", reason="cached", risk=risk, approval_key=approval_key)

        if self._provider is None:
            return GateDecision(
                action="deny",
                reason="unattended",
                risk=risk,
                output=self._unattended_denial_output,
                approval_key=approval_key,
            )

        request = ApprovalRequest(
            approval_key=approval_key,
            tool=call.name,
            summary=summary,
            reasons=list(risk.reasons),
            details=details,
        )
        timeout_ms = self._approval_timeout_ms
        try:
            pending = self._provider.request_approval(request=request, timeout_ms=timeout_ms)
            if timeout_ms is not None and timeout_ms > 0:
                decision = await asyncio.wait_for(pending, timeout=timeout_ms / 1000.0)
            else:
                decision = await pending
        except asyncio.TimeoutError:
            return GateDecision(
                action="deny", reason="approval_timeout", risk=risk, output=APPROVAL_TIMEOUT_DENIAL, approval_key=approval_key
            )
        except Exception:
            logger.warning("Approval provider failed for tool %r; denying", call.name, exc_info=True)
            return GateDecision(action="deny", reason="approval_error", risk=risk, output=USER_DENIAL, approval_key=approval_key)

        if decision == ApprovalDecision.APPROVED_FOR_SESSION:
            self._approvals.keys.add(approval_key)
            return GateDecision(action="allow", reason="approved_for_session", risk=risk, approval_key=approval_key)
        if decision == ApprovalDecision.APPROVED:
            return GateDecision(action="allow", reason="approved", risk=risk, approval_key=approval_key)
        return GateDecision(action="deny", reason="user_denied", risk=risk, output=USER_DENIAL, approval_key=approval_key)


class GatedToolExecutor:
    """
    组合执行器：工具白名单过滤 → SafetyGate → 实际执行器。

    说明：
    - `allowed_tools` 为 None 表示不过滤；被过滤的调用直接返回 denied，不经过 SafetyGate；
    - 按输入顺序逐个执行（后续调用可能依赖前序调用，例如 preview 后 apply）。
    """

    def __init__(
        self,
        *,
        inner: Any,
        gate: SafetyGate,
        allowed_tools: Optional[List[str]] = None,
        scope_label: Optional[str] = None,
    ) -> None:
        """
        参数：
        - inner：实际的 ToolExecutor
        - gate：会话级 SafetyGate
        - allowed_tools：可选工具白名单
        - scope_label：白名单拒绝文本中的作用域名称（例如 `subagent s1`）
        """

        self._inner = inner
        self._gate = gate
        self._allowed = None if allowed_tools is None else set(allowed_tools)
        self._scope_label = scope_label

    def restricted(self, allowed_tools: Optional[List[str]], *, scope_label: str) -> "GatedToolExecutor":
        """
        派生一个共享 gate/inner、但带工具白名单的执行器（用于子代理）。

        说明：
        - 已有白名单时取交集（嵌套子代理不能放宽父级限制）；
        - allowed_tools 为 None 时沿用当前白名单。
        """

        if allowed_tools is None:
            narrowed = None if self._allowed is None else sorted(self._allowed)
        elif self._allowed is None:
            narrowed = list(allowed_tools)
        else:
            narrowed = [name for name in allowed_tools if name in self._allowed]
        return GatedToolExecutor(inner=self._inner, gate=self._gate, allowed_tools=narrowed, scope_label=scope_label)

    async def execute(self, calls: List[ToolCall]) -> List[ToolResult]:
        """逐个执行工具调用，返回同序同数量的结果。"""

        results: List[ToolResult] = []
        for call in calls:
            if self._allowed is not None and call.name not in self._allowed:
                scope = self._scope_label or "this scope"
                results.append(ToolResult.denied(call.id, call.name, f"Tool '{call.name}' is not allowed for {scope}."))
                continue

            decision = await self._gate.evaluate(call)
            if not decision.allowed:
                results.append(decision.to_denied_result(call))
                continue

            produced = await self._inner.execute([call])
            if produced:
                results.append(produced[0])
            else:
                results.append(ToolResult.error(call.id, call.name, f"Tool call '{call.id}' produced no result."))
        return results
