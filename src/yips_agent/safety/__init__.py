"""
Safety（Risk Gate + Approvals）模块。
"""

from __future__ import annotations

from yips_agent.safety.approvals import (
    ApprovalDecision,
    ApprovalProvider,
    ApprovalRequest,
    compute_approval_key,
)
from yips_agent.safety.gate import GateDecision, GatedToolExecutor, SafetyGate
from yips_agent.safety.policy import RiskAssessment, assess_action_risk, default_command_classifier
from yips_agent.safety.rule_approvals import ApprovalRule, RuleBasedApprovalProvider

__all__ = [
    "ApprovalDecision",
    "ApprovalProvider",
    "ApprovalRequest",
    "ApprovalRule",
    "GateDecision",
    "GatedToolExecutor",
    "RiskAssessment",
    "RuleBasedApprovalProvider",
    "SafetyGate",
    "assess_action_risk",
    "compute_approval_key",
    "default_command_classifier",
]
