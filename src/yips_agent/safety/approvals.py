"""
Approvals（操作员确认）协议与工具函数。

说明：
- `confirm` 级别的 action 由 `SafetyGate` 通过 `ApprovalProvider` 询问操作员；
- 交互式宿主（CLI）提供读 stdin 的 provider；无人值守宿主不提供 provider，或使用 fail-closed 的规则 provider；
- approval_key 用于 session 级缓存（`approved_for_session`）。
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class ApprovalDecision(str, Enum):
    """审批决策枚举（最小集合）。"""

    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"


class ApprovalRequest(BaseModel):
    """
    审批请求（面向操作员）。

    字段：
    - approval_key：稳定 key（用于 session 级缓存）
    - tool：工具名（run_command/preview_write_file/...）
    - summary：人类可读摘要
    - reasons：风险标签（destructive / outside-working-zone）
    - details：结构化详情（command/cwd/path 等）
    """

    model_config = ConfigDict(extra="forbid")

    approval_key: str
    tool: str
    summary: str
    reasons: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class ApprovalProvider(Protocol):
    """审批适配层（核心不直接读 stdin）。"""

    async def request_approval(
        self,
        *,
        request: ApprovalRequest,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalDecision:
        """
        请求操作员对一次 `confirm` 级别的 action 做出决策。

        约束：
        - `timeout_ms` 为 None 表示由实现自行决定等待策略；
        - 调用方对超时/异常一律按 DENIED 处理。
        """

        ...


def compute_approval_key(*, tool: str, request: Dict[str, Any]) -> str:
    """
    计算 approval_key（canonical JSON sha256）。

    参数：
    - tool：工具名
    - request：工具请求的可审计表示（仅含稳定字段）
    """

    canonical = {"tool": tool, "request": request}
    raw = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
