from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

from yips_agent.core.action_runner import SUBAGENT_UNAVAILABLE_OUTPUT
from yips_agent.core.errors import BackendUnavailableError
from yips_agent.core.subagents import NO_OUTPUT_FALLBACK, build_subagent_executor, build_subagent_scope_message
from yips_agent.llm.fake import FakeAssistantBackend
from yips_agent.protocol.system_prompt import TOOL_PROTOCOL_SYSTEM_PROMPT
from yips_agent.safety.gate import GatedToolExecutor, SafetyGate
from yips_agent.tools.protocol import SubagentCall, SubagentResult, ToolCall, ToolResult


def _envelope(*actions: Dict[str, Any]) -> str:
    return f"```yips-agent\n{json.dumps({'actions': list(actions)})}\n```"


def _tool(call_id: str, name: str, **arguments: Any) -> Dict[str, Any]:
    return {"type": "tool", "id": call_id, "name": name, "arguments": arguments}


class _OkTools:
    def __init__(self) -> None:
        self.executed: List[str] = []

    async def execute(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        self.executed.extend(c.id for c in calls)
        return [ToolResult.ok(c.id, c.name, "fine") for c in calls]


def _make(tmp_path: Path, replies: Sequence[Any], **kwargs: Any):
    backend = FakeAssistantBackend(replies)
    inner = _OkTools()
    tools = GatedToolExecutor(inner=inner, gate=SafetyGate(workspace_root=tmp_path))
    runner = build_subagent_executor(backend=backend, tool_executor=tools, **kwargs)
    return runner, backend, inner


def _call(**fields: Any) -> SubagentCall:
    fields.setdefault("id", "a1")
    fields.setdefault("task", "Investigate the build")
    return SubagentCall.model_validate(fields)


def _run(runner, *calls: SubagentCall) -> List[SubagentResult]:
    return asyncio.run(runner.execute(list(calls)))


# ----------------------------
# scope message
# ----------------------------


def test_scope_message_lists_task_context_and_tools() -> None:
    msg = build_subagent_scope_message(_call(context="CI is red", allowed_tools=["read_file", "grep"]))
    assert msg.splitlines() == [
        "Subagent scope:",
        "Task: Investigate the build",
        "Context: CI is red",
        "Allowed tools: read_file, grep",
        "Stay focused on the delegated scope and return concise findings.",
    ]


def test_scope_message_tool_variants() -> None:
    assert "Allowed tools: all available tools" in build_subagent_scope_message(_call())
    assert "Allowed tools: (none)" in build_subagent_scope_message(_call(allowed_tools=[]))


# ----------------------------
# execution
# ----------------------------


def test_subagent_returns_last_assistant_text(tmp_path: Path) -> None:
    runner, backend, _ = _make(tmp_path, ["Build is broken by a typo."])

    results = _run(runner, _call())

    assert results[0].status == "ok"
    assert results[0].output == "Build is broken by a typo."
    assert results[0].metadata == {"rounds": 1}

    request = backend.calls[0]
    assert request.stream is False
    assert [m.role for m in request.messages] == ["system", "system", "user"]
    assert request.messages[0].content == TOOL_PROTOCOL_SYSTEM_PROMPT
    assert request.messages[1].content.startswith("Subagent scope:")
    assert request.messages[2].content == "Investigate the build"


def test_disallowed_tools_are_denied_without_execution(tmp_path: Path) -> None:
    runner, backend, inner = _make(
        tmp_path,
        [_envelope(_tool("t1", "run_command", command="ls"), _tool("t2", "read_file", path="a")), "done"],
    )

    results = _run(runner, _call(allowed_tools=["read_file"]))

    assert results[0].status == "ok"
    assert inner.executed == ["t2"]
    tool_msg = backend.calls[1].messages[-1].content
    assert "Tool 'run_command' is not allowed for subagent a1." in tool_msg


def test_round_budget_yields_timeout(tmp_path: Path) -> None:
    loop = _envelope(_tool("t1", "list_dir"))
    runner, _, _ = _make(tmp_path, [loop, loop, loop])

    results = _run(runner, _call(max_rounds=2))

    assert results[0].status == "timeout"
    assert results[0].metadata == {"rounds": 2}
    assert results[0].output == NO_OUTPUT_FALLBACK


def test_default_max_rounds_from_runner(tmp_path: Path) -> None:
    loop = _envelope(_tool("t1", "list_dir"))
    runner, backend, _ = _make(tmp_path, [loop] * 5, max_rounds=3)
    results = _run(runner, _call())
    assert results[0].metadata == {"rounds": 3}
    assert backend.remaining == 2


def test_backend_failure_becomes_error_result(tmp_path: Path) -> None:
    runner, _, _ = _make(tmp_path, [BackendUnavailableError("connection failed: refused")])

    results = _run(runner, _call())

    assert results[0].status == "error"
    assert results[0].output == "Subagent failed: connection failed: refused"


def test_calls_run_sequentially_in_order(tmp_path: Path) -> None:
    runner, backend, _ = _make(tmp_path, ["first", "second"])
    results = _run(runner, _call(id="a1", task="one"), _call(id="a2", task="two"))
    assert [(r.call_id, r.output) for r in results] == [("a1", "first"), ("a2", "second")]
    assert [c.messages[-1].content for c in backend.calls] == ["one", "two"]


# ----------------------------
# depth
# ----------------------------


def test_depth_zero_disables_delegation(tmp_path: Path) -> None:
    runner, _, _ = _make(tmp_path, [], max_depth=0)
    assert runner is None


def test_last_level_cannot_delegate(tmp_path: Path) -> None:
    nested = {"type": "subagent", "id": "inner", "task": "go deeper"}
    runner, backend, _ = _make(tmp_path, [_envelope(nested), "stopped"])

    results = _run(runner, _call())

    assert results[0].output == "stopped"
    sub_msg = backend.calls[1].messages[-1].content
    assert sub_msg.startswith("Subagent results: ")
    assert SUBAGENT_UNAVAILABLE_OUTPUT in sub_msg


def test_two_levels_allow_one_nested_delegation(tmp_path: Path) -> None:
    nested = {"type": "subagent", "id": "inner", "task": "go deeper"}
    runner, backend, _ = _make(tmp_path, [_envelope(nested), "inner finding", "outer summary"], max_depth=2)

    results = _run(runner, _call())

    assert results[0].output == "outer summary"
    # 第二次请求来自嵌套子代理（独立历史）
    assert backend.calls[1].messages[-1].content == "go deeper"
    outer_followup = backend.calls[2].messages[-1].content
    assert '"output":"inner finding"' in outer_followup


def test_nested_allow_list_cannot_widen_parent(tmp_path: Path) -> None:
    nested = {"type": "subagent", "id": "inner", "task": "t", "allowed_tools": ["read_file", "run_command"]}
    runner, backend, inner = _make(
        tmp_path,
        [_envelope(nested), _envelope(_tool("c1", "run_command", command="ls")), "inner done", "outer done"],
        max_depth=2,
    )

    _run(runner, _call(allowed_tools=["read_file"]))

    assert inner.executed == []
    assert "Tool 'run_command' is not allowed for subagent inner." in backend.calls[2].messages[-1].content
