"""
规则审批（RuleBasedApprovalProvider）。

用于无人值守宿主（bot/gateway）：
- 不等待人类，而是按程序化规则决策；
- 默认 fail-closed：未命中规则一律拒绝；
- condition 抛异常视为不命中。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from yips_agent.safety.approvals import ApprovalDecision, ApprovalProvider, ApprovalRequest

logger = logging.getLogger(__name__)


ApprovalCondition = Callable[[ApprovalRequest], bool]


@dataclass(frozen=True)
class ApprovalRule:
    """
    审批规则。

    字段：
    - tool：工具名（精确匹配）
    - reason：可选；仅当请求的风险标签包含该值时参与匹配
    - condition：可选谓词；返回 True 表示命中；抛异常视为不命中
    - decision：命中后的决策
    """

    tool: str
    reason: Optional[str] = None
    condition: Optional[ApprovalCondition] = None
    decision: ApprovalDecision = ApprovalDecision.DENIED


class RuleBasedApprovalProvider(ApprovalProvider):
    """按规则顺序匹配，首个命中即返回；无命中返回默认决策（DENIED）。"""

    def __init__(
        self,
        *,
        rules: List[ApprovalRule],
        default: ApprovalDecision = ApprovalDecision.DENIED,
    ) -> None:
        """
        参数：
        - rules：审批规则列表
        - default：未命中规则时的决策
        """

        self._rules = list(rules or [])
        self._default = default

    async def request_approval(self, *, request: ApprovalRequest, timeout_ms: Optional[int] = None) -> ApprovalDecision:  # type: ignore[override]
        """根据规则返回审批决策（`timeout_ms` 不使用）。"""

        tool = str(request.tool or "").strip()
        for rule in self._rules:
            if str(rule.tool or "").strip() != tool:
                continue
            if rule.reason is not None and rule.reason not in request.reasons:
                continue
            if rule.condition is None:
                return rule.decision
            try:
                if bool(rule.condition(request)):
                    return rule.decision
            except Exception:
                logger.debug("Approval rule condition raised for tool %r", tool, exc_info=True)
                continue
        return self._default
