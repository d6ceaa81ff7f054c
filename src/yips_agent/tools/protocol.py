"""
Action 协议（ToolCall / SkillCall / SubagentCall 及其结果）。

本模块定义 envelope 中三类 action 的内部表示：
- ToolCall：按 `name` 判别的 tagged union；每个工具有自己的参数模型（解析时即完成校验）
- SkillCall：skill 名称 + 开放参数 map
- SubagentCall：委派任务（task/context/allowed_tools/max_rounds）
- ToolResult / SkillResult / SubagentResult：统一的 `status ∈ {ok, error, denied, timeout}` 结果

wire 口径：
- 参数名沿用 camelCase（`maxBytes`/`oldText`/`timeoutMs`...），同时接受 snake_case；
- 结果序列化使用 `callId`（见 `ActionResult.to_summary()`）。
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Protocol, Sequence, Union, runtime_checkable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

TOOL_NAMES = (
    "read_file",
    "write_file",
    "edit_file",
    "list_dir",
    "grep",
    "run_command",
    "preview_write_file",
    "apply_file_change",
)
SKILL_NAMES = ("search", "fetch", "build", "todos", "virtual_terminal")

ResultStatus = Literal["ok", "error", "denied", "timeout"]

READ_FILE_DEFAULT_BYTES = 200_000
READ_FILE_MAX_BYTES = 500_000
GREP_DEFAULT_MATCHES = 200
GREP_MAX_MATCHES = 2_000
COMMAND_DEFAULT_TIMEOUT_MS = 60_000
COMMAND_MAX_TIMEOUT_MS = 120_000
SUBAGENT_MAX_ROUNDS_CAP = 6


def _bounded_int(value: Any, *, default: int, cap: int) -> int:
    """宽松的整数参数：非法/非正数回落到默认值，超过上限截断到上限。"""

    if isinstance(value, bool):
        return default
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        return default
    return min(value, cap)


class _ToolArgs(BaseModel):
    """工具参数模型基类（未知字段忽略；允许 camelCase/snake_case 两种写法）。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class ReadFileArgs(_ToolArgs):
    path: str
    max_bytes: int = Field(default=READ_FILE_DEFAULT_BYTES, validation_alias=AliasChoices("maxBytes", "max_bytes"))

    @field_validator("max_bytes", mode="before")
    @classmethod
    def _clamp_max_bytes(cls, v: Any) -> int:
        return _bounded_int(v, default=READ_FILE_DEFAULT_BYTES, cap=READ_FILE_MAX_BYTES)


class WriteFileArgs(_ToolArgs):
    """`write_file`/`preview_write_file` 参数：目标路径 + 完整新内容。"""

    path: str
    content: str


class EditFileArgs(_ToolArgs):
    """`edit_file` 参数：在现有文件中把 old_text 替换为 new_text。"""

    path: str
    old_text: str = Field(validation_alias=AliasChoices("oldText", "old_text"))
    new_text: str = Field(validation_alias=AliasChoices("newText", "new_text"))
    replace_all: bool = Field(default=False, validation_alias=AliasChoices("replaceAll", "replace_all"))


class ListDirArgs(_ToolArgs):
    path: str = "."


class GrepArgs(_ToolArgs):
    pattern: str
    path: str = "."
    max_matches: int = Field(default=GREP_DEFAULT_MATCHES, validation_alias=AliasChoices("maxMatches", "max_matches"))

    @field_validator("max_matches", mode="before")
    @classmethod
    def _clamp_max_matches(cls, v: Any) -> int:
        return _bounded_int(v, default=GREP_DEFAULT_MATCHES, cap=GREP_MAX_MATCHES)


class RunCommandArgs(_ToolArgs):
    command: str
    cwd: str = "."
    timeout_ms: int = Field(default=COMMAND_DEFAULT_TIMEOUT_MS, validation_alias=AliasChoices("timeoutMs", "timeout_ms"))

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _clamp_timeout(cls, v: Any) -> int:
        return _bounded_int(v, default=COMMAND_DEFAULT_TIMEOUT_MS, cap=COMMAND_MAX_TIMEOUT_MS)


class ApplyFileChangeArgs(_ToolArgs):
    """`apply_file_change` 参数；token 缺失时由执行器返回 `missing-token`（不在解析阶段丢弃）。"""

    token: str = ""


class _CallBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _strip_id(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("call id must be a non-empty string")
        return v.strip()


class ReadFileCall(_CallBase):
    name: Literal["read_file"] = "read_file"
    arguments: ReadFileArgs


class WriteFileCall(_CallBase):
    name: Literal["write_file"] = "write_file"
    arguments: WriteFileArgs


class PreviewWriteFileCall(_CallBase):
    name: Literal["preview_write_file"] = "preview_write_file"
    arguments: WriteFileArgs


class EditFileCall(_CallBase):
    name: Literal["edit_file"] = "edit_file"
    arguments: EditFileArgs


class ListDirCall(_CallBase):
    name: Literal["list_dir"] = "list_dir"
    arguments: ListDirArgs = Field(default_factory=ListDirArgs)


class GrepCall(_CallBase):
    name: Literal["grep"] = "grep"
    arguments: GrepArgs


class RunCommandCall(_CallBase):
    name: Literal["run_command"] = "run_command"
    arguments: RunCommandArgs


class ApplyFileChangeCall(_CallBase):
    name: Literal["apply_file_change"] = "apply_file_change"
    arguments: ApplyFileChangeArgs = Field(default_factory=ApplyFileChangeArgs)


ToolCall = Annotated[
    Union[
        ReadFileCall,
        WriteFileCall,
        PreviewWriteFileCall,
        EditFileCall,
        ListDirCall,
        GrepCall,
        RunCommandCall,
        ApplyFileChangeCall,
    ],
    Field(discriminator="name"),
]

TOOL_CALL_ADAPTER: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


def parse_tool_call(raw: Dict[str, Any]) -> ToolCall:
    """
    将 wire 形状 `{id, name, arguments}` 校验为具体的 ToolCall 变体。

    异常：
    - pydantic.ValidationError：id 为空、name 不在白名单、arguments 不是 object 或字段类型不符
    """

    return TOOL_CALL_ADAPTER.validate_python(raw)


class SkillCall(_CallBase):
    """Skill 调用；参数保持开放 map，由 skill runner 自行解释。"""

    name: Literal["search", "fetch", "build", "todos", "virtual_terminal"]
    arguments: Dict[str, Any] = Field(default_factory=dict)


class SubagentCall(_CallBase):
    """
    子代理委派。

    字段：
    - task：委派任务（非空）
    - context：可选补充上下文
    - allowed_tools：可选工具白名单（None 表示“全部工具”；空列表表示“不允许任何工具”）
    - max_rounds：可选轮次上限（非正数忽略；上限 6）
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    task: str
    context: Optional[str] = None
    allowed_tools: Optional[List[str]] = Field(default=None, validation_alias=AliasChoices("allowedTools", "allowed_tools"))
    max_rounds: Optional[int] = Field(default=None, validation_alias=AliasChoices("maxRounds", "max_rounds"))

    @field_validator("task", mode="before")
    @classmethod
    def _strip_task(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("subagent task must be a non-empty string")
        return v.strip()

    @field_validator("context", mode="before")
    @classmethod
    def _normalize_context(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip()

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _filter_allowed_tools(cls, v: Any) -> Optional[List[str]]:
        if not isinstance(v, list):
            return None
        out: List[str] = []
        for item in v:
            name = item.strip() if isinstance(item, str) else ""
            if name in TOOL_NAMES and name not in out:
                out.append(name)
        return out

    @field_validator("max_rounds", mode="before")
    @classmethod
    def _normalize_max_rounds(cls, v: Any) -> Optional[int]:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        if isinstance(v, float) and not math.isfinite(v):
            return None
        n = int(v)
        if n <= 0:
            return None
        return min(n, SUBAGENT_MAX_ROUNDS_CAP)


class ActionResult(BaseModel):
    """三类结果的公共字段与摘要序列化。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    call_id: str = Field(validation_alias=AliasChoices("callId", "call_id"), serialization_alias="callId")
    status: ResultStatus
    output: str
    metadata: Optional[Dict[str, Any]] = None

    def to_summary(self) -> Dict[str, Any]:
        """回注给模型的紧凑表示（wire key 为 camelCase；无 metadata 时省略）。"""

        return self.model_dump(by_alias=True, exclude_none=True)


class ToolResult(ActionResult):
    """工具执行结果。"""

    tool: str

    @classmethod
    def ok(cls, call_id: str, tool: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls(call_id=call_id, tool=tool, status="ok", output=output, metadata=metadata)

    @classmethod
    def error(cls, call_id: str, tool: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        """便捷构造：失败结果。"""

        return cls(call_id=call_id, tool=tool, status="error", output=output, metadata=metadata)

    @classmethod
    def denied(cls, call_id: str, tool: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> "ToolResult":
        """便捷构造：被拒绝的结果（risk gate / 白名单过滤）。"""

        return cls(call_id=call_id, tool=tool, status="denied", output=output, metadata=metadata)


class SkillResult(ActionResult):
    """Skill 执行结果。"""

    skill: str


class SubagentResult(ActionResult):
    """子代理执行结果（metadata.rounds 记录子 turn 的轮数）。"""


@runtime_checkable
class ToolExecutor(Protocol):
    """工具执行器：输出与输入同序同数量；永不抛异常（失败表示为 `status=error`）。"""

    async def execute(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        ...


@runtime_checkable
class SkillExecutor(Protocol):
    """Skill 执行器（口径同 ToolExecutor）。"""

    async def execute(self, calls: Sequence[SkillCall]) -> List[SkillResult]:
        ...


@runtime_checkable
class SubagentExecutor(Protocol):
    """子代理执行器（口径同 ToolExecutor）。"""

    async def execute(self, calls: Sequence[SubagentCall]) -> List[SubagentResult]:
        ...
