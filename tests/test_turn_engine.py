from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from yips_agent.core.action_runner import (
    SKILL_UNAVAILABLE_OUTPUT,
    SKILL_UNAVAILABLE_WARNING,
    SUBAGENT_UNAVAILABLE_OUTPUT,
    SUBAGENT_UNAVAILABLE_WARNING,
)
from yips_agent.core.contracts import EVENT_ASSISTANT_TEXT, EVENT_ROUND_COMPLETED, EVENT_WARNING, AgentEvent, Message
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.core.turn_engine import PIVOT_SYSTEM_MESSAGE, PIVOT_WARNING, TurnDependencies, run_agent_turn
from yips_agent.llm.fake import FakeAssistantBackend
from yips_agent.llm.protocol import AssistantReply
from yips_agent.protocol.system_prompt import compose_request_messages
from yips_agent.tools.executor import WorkspaceToolExecutor
from yips_agent.tools.file_change_store import StagedChangeStore
from yips_agent.tools.protocol import SkillCall, SkillResult, ToolCall, ToolResult


def _envelope(*actions: Dict[str, Any], text: Optional[str] = None) -> str:
    obj: Dict[str, Any] = {"actions": list(actions)}
    if text is not None:
        obj["assistant_text"] = text
    return f"```yips-agent\n{json.dumps(obj)}\n```"


def _tool(call_id: str, name: str, **arguments: Any) -> Dict[str, Any]:
    return {"type": "tool", "id": call_id, "name": name, "arguments": arguments}


class _StatusTools:
    """每次调用返回固定状态的工具执行器。"""

    def __init__(self, status: str = "ok") -> None:
        self.status = status
        self.calls: List[ToolCall] = []

    async def execute(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        self.calls.extend(calls)
        return [ToolResult(call_id=c.id, tool=c.name, status=self.status, output=f"{c.name} {self.status}") for c in calls]


class _EchoSkills:
    async def execute(self, calls: Sequence[SkillCall]) -> List[SkillResult]:
        return [SkillResult(call_id=c.id, skill=c.name, status="ok", output=f"ran {c.name}") for c in calls]


class _Harness:
    def __init__(self, replies: Sequence[Any], *, tools: Any = None, **deps: Any) -> None:
        self.backend = FakeAssistantBackend(replies)
        self.history: List[Message] = [Message(role="user", content="hello")]
        self.events: List[AgentEvent] = []
        self.tools = tools or _StatusTools()

        async def _request() -> AssistantReply:
            return await self.backend.complete(compose_request_messages(self.history), stream=False)

        self.deps = TurnDependencies(
            request_assistant=_request,
            tool_executor=self.tools,
            emit=self.events.append,
            turn_id="turn_1",
            **deps,
        )

    def run(self, **kwargs: Any):
        return asyncio.run(run_agent_turn(self.history, self.deps, **kwargs))

    def events_of(self, kind: str) -> List[AgentEvent]:
        return [e for e in self.events if e.type == kind]

    def warnings(self) -> List[str]:
        return [e.payload["message"] for e in self.events_of(EVENT_WARNING)]

    def system_messages(self) -> List[str]:
        return [m.content for m in self.history if m.role == "system"]


# ----------------------------
# completion
# ----------------------------


def test_plain_reply_finishes_in_one_round() -> None:
    h = _Harness(["All done."])
    outcome = h.run()

    assert outcome.finished is True
    assert outcome.rounds == 1
    assert h.history[-1] == Message(role="assistant", content="All done.")
    assert [e.type for e in h.events] == [EVENT_ASSISTANT_TEXT]
    assert h.events[0].payload == {"text": "All done.", "rendered": False}
    assert h.events[0].turn_id == "turn_1"


def test_one_tool_round_then_plain_reply(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("", encoding="utf-8")
    tools = WorkspaceToolExecutor(workspace_root=tmp_path, store=StagedChangeStore())
    h = _Harness([_envelope(_tool("t1", "list_dir")), "Found a.txt"], tools=tools)

    outcome = h.run()

    assert outcome.finished is True
    assert outcome.rounds == 2
    tool_msgs = [s for s in h.system_messages() if s.startswith("Tool results: ")]
    assert len(tool_msgs) == 1
    payload = json.loads(tool_msgs[0][len("Tool results: ") :])
    assert payload[0]["callId"] == "t1"
    assert payload[0]["tool"] == "list_dir"
    assert payload[0]["status"] == "ok"
    assert "file a.txt" in payload[0]["output"]

    # 第二次请求已包含 Tool results 消息
    second_request = h.backend.calls[1].messages
    assert second_request[-1].content.startswith("Tool results: ")
    assert [e.type for e in h.events] == [EVENT_ROUND_COMPLETED, EVENT_ASSISTANT_TEXT]
    assert h.events[0].payload == {"round": 1}


def test_envelope_assistant_text_becomes_history_not_raw_payload() -> None:
    h = _Harness([_envelope(_tool("t1", "list_dir"), text="Looking around."), "Done."])
    h.run()
    assistant = [m.content for m in h.history if m.role == "assistant"]
    assert assistant == ["Looking around.", "Done."]


def test_denied_result_does_not_block_completion() -> None:
    h = _Harness([_envelope(_tool("t1", "run_command", command="rm -rf /")), "Ok, I will not."], tools=_StatusTools("denied"))
    outcome = h.run()
    assert outcome.finished is True
    assert outcome.rounds == 2
    assert PIVOT_SYSTEM_MESSAGE not in h.system_messages()


# ----------------------------
# round budget
# ----------------------------


def test_round_budget_stops_with_warning() -> None:
    same = _envelope(_tool("t1", "list_dir"))
    h = _Harness([same, same, same])
    outcome = h.run(max_rounds=2)

    assert outcome.finished is False
    assert outcome.rounds == 2
    assert h.backend.remaining == 1
    assert h.warnings() == ["Stopped tool chaining after max depth (2 rounds)."]
    assert h.events_of(EVENT_WARNING)[0].payload["code"] == "max_depth"
    assert len(h.events_of(EVENT_ROUND_COMPLETED)) == 2


# ----------------------------
# pivot
# ----------------------------


def test_two_failed_rounds_trigger_one_pivot() -> None:
    failing = _envelope(_tool("t1", "read_file", path="missing.txt"))
    h = _Harness([failing, failing, "Giving up on that file."], tools=_StatusTools("error"))

    outcome = h.run()

    assert outcome.finished is True
    assert outcome.rounds == 3
    assert h.warnings() == [PIVOT_WARNING]
    assert h.system_messages().count(PIVOT_SYSTEM_MESSAGE) == 1
    # pivot 消息位于第二轮工具结果之后、第三次请求之前
    third_request = [m.content for m in h.backend.calls[2].messages]
    assert third_request[-1] == PIVOT_SYSTEM_MESSAGE


def test_timeouts_count_as_failures() -> None:
    failing = _envelope(_tool("t1", "run_command", command="sleep 100"))
    h = _Harness([failing, failing, "stop"], tools=_StatusTools("timeout"))
    h.run()
    assert h.warnings() == [PIVOT_WARNING]


def test_custom_pivot_threshold() -> None:
    failing = _envelope(_tool("t1", "read_file", path="x"))
    h = _Harness([failing, failing, failing, "stop"], tools=_StatusTools("error"))
    h.run(failure_pivot_threshold=3)
    assert h.warnings() == [PIVOT_WARNING]
    assert h.system_messages()[-1] == PIVOT_SYSTEM_MESSAGE


# ----------------------------
# skills / subagents
# ----------------------------


def test_missing_subagent_executor() -> None:
    h = _Harness([_envelope({"type": "subagent", "id": "a1", "task": "dig"}), "ok"])
    outcome = h.run()

    assert outcome.finished is True
    assert h.warnings() == [SUBAGENT_UNAVAILABLE_WARNING]
    assert h.events_of(EVENT_WARNING)[0].payload["code"] == "subagent_runner_unavailable"
    msg = next(s for s in h.system_messages() if s.startswith("Subagent results: "))
    assert '"status":"error"' in msg
    assert SUBAGENT_UNAVAILABLE_OUTPUT in msg


def test_missing_skill_executor() -> None:
    h = _Harness([_envelope({"type": "skill", "id": "s1", "name": "search", "arguments": {"query": "x"}}), "ok"])
    h.run()

    assert h.warnings() == [SKILL_UNAVAILABLE_WARNING]
    msg = next(s for s in h.system_messages() if s.startswith("Skill results: "))
    assert '"status":"error"' in msg
    assert SKILL_UNAVAILABLE_OUTPUT in msg


def test_categories_run_in_order_with_one_message_each() -> None:
    h = _Harness(
        [
            _envelope(
                {"type": "skill", "id": "s1", "name": "todos"},
                _tool("t1", "list_dir"),
                _tool("t2", "grep", pattern="x"),
            ),
            "done",
        ],
        skill_executor=_EchoSkills(),
    )
    h.run()

    results = [s for s in h.system_messages() if s.endswith("]")]
    assert [s.split(":", 1)[0] for s in results] == ["Tool results", "Skill results"]
    assert [c.id for c in h.tools.calls] == ["t1", "t2"]


def test_skill_only_round_resets_failure_streak() -> None:
    failing = _envelope(_tool("t1", "read_file", path="x"))
    skill_only = _envelope({"type": "skill", "id": "s1", "name": "todos"})
    h = _Harness([failing, skill_only, failing, "done"], tools=_StatusTools("error"), skill_executor=_EchoSkills())
    outcome = h.run()
    assert outcome.rounds == 4
    assert PIVOT_WARNING not in h.warnings()


# ----------------------------
# protocol problems
# ----------------------------


def test_parse_errors_surface_as_warnings_and_system_message() -> None:
    h = _Harness(["```yips-agent\n{broken\n```"])
    outcome = h.run()

    assert outcome.finished is True
    assert h.warnings() == ["Action envelope JSON is invalid."]
    assert h.events_of(EVENT_WARNING)[0].payload["code"] == "protocol_parse_error"
    assert "Protocol parse error: Action envelope JSON is invalid." in h.system_messages()


def test_duplicate_ids_surface_protocol_warning() -> None:
    h = _Harness([_envelope(_tool("t1", "list_dir"), _tool("t1", "list_dir")), "ok"])
    h.run()
    assert h.warnings() == ["Duplicate action id 't1' ignored."]
    assert len(h.tools.calls) == 1


# ----------------------------
# tokens / failures
# ----------------------------


def test_reported_usage_is_preferred() -> None:
    h = _Harness([AssistantReply(text="hi", total_tokens=120, completion_tokens=20, generation_duration_ms=1000)])
    outcome = h.run()
    assert outcome.used_tokens_exact == 120
    assert outcome.latest_output_tokens_per_second == 20.0


def test_estimates_when_usage_missing() -> None:
    h = _Harness([AssistantReply(text="x" * 40, generation_duration_ms=500)])
    outcome = h.run()
    # history: "hello"(2) + assistant 40 chars(10)
    assert outcome.used_tokens_exact == 12
    assert outcome.latest_output_tokens_per_second == 20.0


def test_rate_is_none_without_duration() -> None:
    outcome = _Harness(["hi"]).run()
    assert outcome.latest_output_tokens_per_second is None


def test_rendered_flag_is_forwarded() -> None:
    h = _Harness([AssistantReply(text="streamed", rendered=True)])
    h.run()
    assert h.events[0].payload["rendered"] is True


def test_backend_failure_propagates() -> None:
    h = _Harness([BackendUnavailableError("connection failed: refused")])
    with pytest.raises(BackendUnavailableError):
        h.run()
    assert h.history == [Message(role="user", content="hello")]


def test_event_json_omits_missing_turn_id() -> None:
    data = json.loads(AgentEvent.warning("careful", code="protocol_warning").to_json())
    assert data["type"] == EVENT_WARNING
    assert data["payload"] == {"code": "protocol_warning", "message": "careful"}
    assert "turn_id" not in data
    assert data["timestamp"].endswith("Z")
