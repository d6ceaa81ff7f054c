"""
核心契约（Core Contracts）。

包含：
- `Message`：对话历史条目（system/user/assistant）
- `AgentEvent`：统一观察者事件流条目（assistant_text / warning / round_completed）
- `TurnOutcome`：一次 turn 的结果摘要

说明：
- 观察者接口用单一事件流表达（而非多个回调参数）；事件次数口径与 turn engine 的步骤一一对应。
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from yips_agent.core.utils import now_rfc3339

Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    """对话历史中的一条消息（值对象；turn 内只追加，不修改）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: Role
    content: str

    def to_wire(self) -> Dict[str, str]:
        """转换为 OpenAI-compatible messages 条目。"""

        return {"role": self.role, "content": self.content}


EVENT_ASSISTANT_TEXT = "assistant_text"
EVENT_WARNING = "warning"
EVENT_ROUND_COMPLETED = "round_completed"


class AgentEvent(BaseModel):
    """
    AgentEvent：统一事件流条目。

    字段：
    - type：事件类型（`assistant_text` / `warning` / `round_completed`）
    - timestamp：RFC3339 时间字符串
    - turn_id：可选；所属 turn
    - payload：事件专用字段
      - assistant_text：`{"text": str, "rendered": bool}`
      - warning：`{"code": str, "message": str}`
      - round_completed：`{"round": int}`
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    timestamp: str = Field(default_factory=now_rfc3339)
    turn_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def assistant_text(cls, text: str, *, rendered: bool, turn_id: Optional[str] = None) -> "AgentEvent":
        """构造 assistant_text 事件。"""

        return cls(type=EVENT_ASSISTANT_TEXT, turn_id=turn_id, payload={"text": text, "rendered": bool(rendered)})

    @classmethod
    def warning(cls, message: str, *, code: str = "warning", turn_id: Optional[str] = None) -> "AgentEvent":
        """构造 warning 事件。"""

        return cls(type=EVENT_WARNING, turn_id=turn_id, payload={"code": code, "message": message})

    @classmethod
    def round_completed(cls, round_no: int, *, turn_id: Optional[str] = None) -> "AgentEvent":
        """构造 round_completed 事件。"""

        return cls(type=EVENT_ROUND_COMPLETED, turn_id=turn_id, payload={"round": int(round_no)})

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json(exclude_none=True)


EventHook = Callable[[AgentEvent], None]


class TurnOutcome(BaseModel):
    """
    一次 turn 的结果。

    字段：
    - finished：模型自然结束（最后一轮没有任何 action）为 True；轮次预算耗尽为 False
    - rounds：实际执行的轮数
    - used_tokens_exact：最近一次的上下文 token 数（backend 报告值或估算值）
    - latest_output_tokens_per_second：最近一轮的输出速率（无法计算时为 None）
    """

    model_config = ConfigDict(extra="forbid")

    finished: bool
    rounds: int
    used_tokens_exact: Optional[int] = None
    latest_output_tokens_per_second: Optional[float] = None
