"""
LoopController：turn 内的轮次计数、预算与失败转向（pivot）控制（internal）。

目标：
- 把“轮次计数、max_rounds、连续失败计数”等状态收敛到单一对象，turn engine 只负责编排。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from yips_agent.tools.protocol import ToolResult

FAILURE_STATUSES = ("error", "timeout")


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_rounds：单个 turn 允许的最大轮数（每轮一次 assistant 请求）
    - failure_pivot_threshold：连续“全失败”工具轮次达到该值时触发一次 pivot
    """

    max_rounds: int
    failure_pivot_threshold: int = 2

    def __post_init__(self) -> None:
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        if self.failure_pivot_threshold < 1:
            raise ValueError("failure_pivot_threshold must be >= 1")
        self._round = 0
        self._consecutive_failed_rounds = 0

    @property
    def rounds(self) -> int:
        """已开始的轮数。"""

        return self._round

    @property
    def consecutive_failed_rounds(self) -> int:
        return self._consecutive_failed_rounds

    def budget_exhausted(self) -> bool:
        """是否已用完轮次预算（不可再开始新的一轮）。"""

        return self._round >= self.max_rounds

    def next_round(self) -> int:
        """推进轮次计数并返回当前轮号（从 1 开始）。"""

        if self.budget_exhausted():
            raise RuntimeError("round budget exhausted")
        self._round += 1
        return self._round

    def record_round(self, tool_results: Sequence[ToolResult]) -> bool:
        """
        记录一轮的工具结果，并判断是否应触发 pivot。

        规则：
        - 本轮至少有一个工具结果且全部为 error/timeout：连续失败计数 +1；
        - 其它情况（无工具结果、或存在 ok/denied）：计数清零；
        - 计数达到阈值时返回 True，并把计数清零。

        返回：
        - True：应插入 pivot 提示
        """

        if tool_results and all(r.status in FAILURE_STATUSES for r in tool_results):
            self._consecutive_failed_rounds += 1
        else:
            self._consecutive_failed_rounds = 0
            return False
        if self._consecutive_failed_rounds >= self.failure_pivot_threshold:
            self._consecutive_failed_rounds = 0
            return True
        return False
