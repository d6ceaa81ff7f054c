"""
Envelope 解析器：从模型回复中提取 action 请求。

支持两种形态（按顺序尝试）：
1) fenced：恰好一个以 ```yips-agent（或 legacy ```yips-tools）开头的代码块，块内为一个 JSON object；
2) bare：整段回复（trim 后）本身就是一个 JSON object，且含 `actions`/`tool_calls`/`skill_calls`/`subagent_calls` 之一。

JSON object 可选字段：
- `tool_calls` / `skill_calls` / `subagent_calls`：按类别分组的调用列表
- `actions`：混合列表，每项带 `type: tool|skill|subagent`
- `assistant_text`：展示给用户的文本
- `warnings`：字符串列表（原样透传给观察者）

约束：
- 解析永不抛异常：无法识别/JSON 非法/块为空/多个块时，整段原文（trim）作为 assistant 文本，调用列表为空；
- 单个条目不合法（id 为空、名称不在白名单、arguments 非 object、参数类型不符）只丢弃该条目；
- 同一回复内重复的 id 只保留第一次出现，并记录 warning。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from yips_agent.tools.protocol import SkillCall, SubagentCall, ToolCall, parse_tool_call

logger = logging.getLogger(__name__)

ENVELOPE_BLOCK_RE = re.compile(r"```(yips-agent|yips-tools)\s*\n([\s\S]*?)```")
_ENVELOPE_KEYS = ("actions", "tool_calls", "skill_calls", "subagent_calls")


@dataclass
class ParsedEnvelope:
    """
    Envelope 解析结果。

    字段：
    - assistant_text：展示给用户的文本（已 trim；可能为空）
    - tool_calls / skill_calls / subagent_calls：各类别调用（保持原始顺序）
    - warnings：需要透传给观察者的提示（重复 id、envelope 自带 warnings）
    - errors：降级原因（JSON 非法、多个块等）；非空时调用列表必为空
    - envelope_found：是否识别到 envelope（fenced 或 bare）
    """

    assistant_text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    skill_calls: List[SkillCall] = field(default_factory=list)
    subagent_calls: List[SubagentCall] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    envelope_found: bool = False

    @property
    def has_actions(self) -> bool:
        """是否包含任意 action。"""

        return bool(self.tool_calls or self.skill_calls or self.subagent_calls)


def _plain(text: str, *, error: Optional[str] = None, envelope_found: bool = False) -> ParsedEnvelope:
    return ParsedEnvelope(
        assistant_text=text.strip(),
        errors=[error] if error else [],
        envelope_found=envelope_found,
    )


def _item_to_wire(item: Any) -> Optional[Dict[str, Any]]:
    """把 `{id, name, arguments}` 条目规整为校验输入；arguments 必须是 object。"""

    if not isinstance(item, dict):
        return None
    args = item.get("arguments", {})
    if not isinstance(args, dict):
        return None
    return {"id": item.get("id"), "name": item.get("name"), "arguments": args}


def _subagent_to_wire(item: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        return None
    out = dict(item)
    out.pop("type", None)
    return out


class _Collector:
    """按类别收集调用，并做单条目校验与 id 去重。"""

    def __init__(self) -> None:
        self.tool_calls: List[ToolCall] = []
        self.skill_calls: List[SkillCall] = []
        self.subagent_calls: List[SubagentCall] = []
        self.warnings: List[str] = []
        self._seen: Set[str] = set()

    def _claim(self, call_id: str) -> bool:
        if call_id in self._seen:
            self.warnings.append(f"Duplicate action id '{call_id}' ignored.")
            return False
        self._seen.add(call_id)
        return True

    def add_tool(self, item: Any) -> None:
        wire = _item_to_wire(item)
        if wire is None:
            return
        try:
            call = parse_tool_call(wire)
        except ValidationError as exc:
            logger.debug("Dropped malformed tool call: %s", exc.errors(include_url=False))
            return
        if self._claim(call.id):
            self.tool_calls.append(call)

    def add_skill(self, item: Any) -> None:
        wire = _item_to_wire(item)
        if wire is None:
            return
        try:
            call = SkillCall.model_validate(wire)
        except ValidationError as exc:
            logger.debug("Dropped malformed skill call: %s", exc.errors(include_url=False))
            return
        if self._claim(call.id):
            self.skill_calls.append(call)

    def add_subagent(self, item: Any) -> None:
        wire = _subagent_to_wire(item)
        if wire is None:
            return
        try:
            call = SubagentCall.model_validate(wire)
        except ValidationError as exc:
            logger.debug("Dropped malformed subagent call: %s", exc.errors(include_url=False))
            return
        if self._claim(call.id):
            self.subagent_calls.append(call)


def _collect_actions(obj: Dict[str, Any]) -> _Collector:
    col = _Collector()

    actions = obj.get("actions")
    if isinstance(actions, list):
        for entry in actions:
            if not isinstance(entry, dict):
                continue
            kind = entry.get("type")
            if kind == "tool":
                col.add_tool(entry)
            elif kind == "skill":
                col.add_skill(entry)
            elif kind == "subagent":
                col.add_subagent(entry)

    for key, add in (
        ("tool_calls", col.add_tool),
        ("skill_calls", col.add_skill),
        ("subagent_calls", col.add_subagent),
    ):
        items = obj.get(key)
        if isinstance(items, list):
            for item in items:
                add(item)

    raw_warnings = obj.get("warnings")
    if isinstance(raw_warnings, list):
        col.warnings.extend(w.strip() for w in raw_warnings if isinstance(w, str) and w.strip())
    return col


def _from_object(obj: Dict[str, Any], *, fallback_text: str) -> ParsedEnvelope:
    col = _collect_actions(obj)
    raw_text = obj.get("assistant_text")
    if isinstance(raw_text, str) and raw_text.strip():
        text = raw_text.strip()
    else:
        text = fallback_text.strip()
    return ParsedEnvelope(
        assistant_text=text,
        tool_calls=col.tool_calls,
        skill_calls=col.skill_calls,
        subagent_calls=col.subagent_calls,
        warnings=col.warnings,
        envelope_found=True,
    )


def _try_bare_envelope(text: str) -> Optional[Dict[str, Any]]:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        obj = json.loads(stripped)
    except (ValueError, RecursionError):
        return None
    if not isinstance(obj, dict) or not any(k in obj for k in _ENVELOPE_KEYS):
        return None
    return obj


def parse_agent_envelope(text: str) -> ParsedEnvelope:
    """
    解析一条模型回复。

    参数：
    - text：模型原始回复

    返回：
    - ParsedEnvelope（永不抛异常）

    说明：
    - fenced 形态下展示文本优先取非空的 `assistant_text`，否则为去掉代码块后的剩余文本；
    - bare 形态下展示文本为 `assistant_text`（缺省为空）。
    """

    raw = text or ""
    matches = list(ENVELOPE_BLOCK_RE.finditer(raw))

    if not matches:
        bare = _try_bare_envelope(raw)
        if bare is None:
            return _plain(raw)
        return _from_object(bare, fallback_text="")

    if len(matches) > 1:
        return _plain(raw, error="Multiple action envelopes found; expected exactly one.", envelope_found=True)

    match = matches[0]
    body = match.group(2).strip()
    if not body:
        return _plain(raw, error="Action envelope body is empty.", envelope_found=True)
    try:
        obj = json.loads(body)
    except (ValueError, RecursionError):
        return _plain(raw, error="Action envelope JSON is invalid.", envelope_found=True)
    if not isinstance(obj, dict):
        return _plain(raw, error="Action envelope root must be a JSON object.", envelope_found=True)

    outside = (raw[: match.start()] + raw[match.end() :]).strip()
    return _from_object(obj, fallback_text=outside)
