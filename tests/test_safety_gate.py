from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

from yips_agent.safety.approvals import ApprovalDecision, ApprovalProvider, ApprovalRequest
from yips_agent.safety.gate import (
    APPROVAL_TIMEOUT_DENIAL,
    RISK_POLICY_DENIAL,
    UNATTENDED_DENIAL,
    USER_DENIAL,
    GatedToolExecutor,
    SafetyGate,
)
from yips_agent.tools.protocol import ToolCall, ToolResult, parse_tool_call


class _ScriptedApprovals(ApprovalProvider):
    """按顺序返回预设决策，并记录收到的请求。"""

    def __init__(self, decisions: Sequence[ApprovalDecision]) -> None:
        self._decisions = list(decisions)
        self.requests: List[ApprovalRequest] = []

    async def request_approval(self, *, request: ApprovalRequest, timeout_ms: Optional[int] = None) -> ApprovalDecision:
        self.requests.append(request)
        return self._decisions.pop(0)


class _SlowApprovals(ApprovalProvider):
    async def request_approval(self, *, request: ApprovalRequest, timeout_ms: Optional[int] = None) -> ApprovalDecision:
        await asyncio.sleep(5)
        return ApprovalDecision.APPROVED


class _BrokenApprovals(ApprovalProvider):
    async def request_approval(self, *, request: ApprovalRequest, timeout_ms: Optional[int] = None) -> ApprovalDecision:
        raise RuntimeError("tty closed")


class _RecordingExecutor:
    """记录实际被执行的调用。"""

    def __init__(self) -> None:
        self.executed: List[str] = []

    async def execute(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        out = []
        for call in calls:
            self.executed.append(call.id)
            out.append(ToolResult.ok(call.id, call.name, "done"))
        return out


def _cmd(call_id: str, command: str, cwd: str = ".") -> ToolCall:
    return parse_tool_call({"id": call_id, "name": "run_command", "arguments": {"command": command, "cwd": cwd}})


def _read(call_id: str, path: str) -> ToolCall:
    return parse_tool_call({"id": call_id, "name": "read_file", "arguments": {"path": path}})


def _make(tmp_path: Path, provider: Optional[ApprovalProvider] = None, **kwargs) -> SafetyGate:
    return SafetyGate(workspace_root=tmp_path, approval_provider=provider, **kwargs)


# ----------------------------
# SafetyGate.evaluate
# ----------------------------


def test_auto_actions_do_not_ask(tmp_path: Path) -> None:
    provider = _ScriptedApprovals([])
    decision = asyncio.run(_make(tmp_path, provider).evaluate(_cmd("c1", "ls")))
    assert decision.allowed is True
    assert decision.reason == "auto"
    assert provider.requests == []


def test_deny_level_never_asks(tmp_path: Path) -> None:
    provider = _ScriptedApprovals([ApprovalDecision.APPROVED])
    decision = asyncio.run(_make(tmp_path, provider).evaluate(_cmd("c1", "rm -rf /", cwd="/")))
    assert decision.allowed is False
    assert decision.output == RISK_POLICY_DENIAL
    assert provider.requests == []


def test_confirm_without_provider_is_denied(tmp_path: Path) -> None:
    decision = asyncio.run(_make(tmp_path).evaluate(_read("r1", "/etc/hosts")))
    assert decision.allowed is False
    assert decision.reason == "unattended"
    assert decision.output == UNATTENDED_DENIAL


def test_unattended_denial_text_is_configurable(tmp_path: Path) -> None:
    gate = _make(tmp_path, unattended_denial_output="nobody is watching")
    decision = asyncio.run(gate.evaluate(_cmd("c1", "rm -rf build")))
    assert decision.output == "nobody is watching"


def test_confirm_request_carries_summary_and_reasons(tmp_path: Path) -> None:
    provider = _ScriptedApprovals([ApprovalDecision.APPROVED])
    decision = asyncio.run(_make(tmp_path, provider).evaluate(_cmd("c1", "rm -rf build")))
    assert decision.allowed is True
    assert decision.reason == "approved"
    req = provider.requests[0]
    assert req.tool == "run_command"
    assert req.reasons == ["destructive"]
    assert "rm -rf build" in req.summary
    assert req.details["command"] == "rm -rf build"


def test_user_denial(tmp_path: Path) -> None:
    provider = _ScriptedApprovals([ApprovalDecision.DENIED])
    decision = asyncio.run(_make(tmp_path, provider).evaluate(_cmd("c1", "rm -rf build")))
    assert decision.allowed is False
    assert decision.output == USER_DENIAL


def test_approval_timeout_denies(tmp_path: Path) -> None:
    gate = _make(tmp_path, _SlowApprovals(), approval_timeout_ms=10)
    decision = asyncio.run(gate.evaluate(_cmd("c1", "rm -rf build")))
    assert decision.allowed is False
    assert decision.reason == "approval_timeout"
    assert decision.output == APPROVAL_TIMEOUT_DENIAL


def test_provider_error_denies(tmp_path: Path) -> None:
    decision = asyncio.run(_make(tmp_path, _BrokenApprovals()).evaluate(_cmd("c1", "rm -rf build")))
    assert decision.allowed is False
    assert decision.reason == "approval_error"


def test_approved_for_session_is_cached(tmp_path: Path) -> None:
    provider = _ScriptedApprovals([ApprovalDecision.APPROVED_FOR_SESSION])
    gate = _make(tmp_path, provider)

    async def _run():
        first = await gate.evaluate(_cmd("c1", "rm -rf build"))
        second = await gate.evaluate(_cmd("c2", "rm -rf build"))
        third = await gate.evaluate(_cmd("c3", "rm -rf dist"))
        return first, second, third

    first, second, third = asyncio.run(_run())
    assert first.reason == "approved_for_session"
    assert second.reason == "cached"
    # 不同命令生成不同的 approval_key，需要重新询问（脚本已耗尽会抛错 → denied）
    assert third.allowed is False
    assert len(provider.requests) == 2


# ----------------------------
# GatedToolExecutor
# ----------------------------


def test_gated_executor_only_runs_allowed_calls(tmp_path: Path) -> None:
    inner = _RecordingExecutor()
    gate = _make(tmp_path, _ScriptedApprovals([ApprovalDecision.DENIED]))
    executor = GatedToolExecutor(inner=inner, gate=gate)

    results = asyncio.run(executor.execute([_cmd("c1", "ls"), _cmd("c2", "rm -rf build"), _read("r1", "a.txt")]))

    assert [r.status for r in results] == ["ok", "denied", "ok"]
    assert inner.executed == ["c1", "r1"]
    assert results[1].output == USER_DENIAL
    assert results[1].metadata["riskLevel"] == "confirm"


def test_allow_list_denies_before_gate(tmp_path: Path) -> None:
    inner = _RecordingExecutor()
    provider = _ScriptedApprovals([])
    executor = GatedToolExecutor(inner=inner, gate=_make(tmp_path, provider)).restricted(
        ["read_file"], scope_label="subagent s1"
    )

    results = asyncio.run(executor.execute([_cmd("c1", "rm -rf build"), _read("r1", "a.txt")]))

    assert results[0].status == "denied"
    assert results[0].output == "Tool 'run_command' is not allowed for subagent s1."
    assert results[1].status == "ok"
    assert provider.requests == []


def test_restricted_intersects_existing_allow_list(tmp_path: Path) -> None:
    inner = _RecordingExecutor()
    outer = GatedToolExecutor(inner=inner, gate=_make(tmp_path)).restricted(["read_file"], scope_label="subagent a")
    nested = outer.restricted(["read_file", "list_dir"], scope_label="subagent b")
    inherited = outer.restricted(None, scope_label="subagent c")

    list_call = parse_tool_call({"id": "l1", "name": "list_dir", "arguments": {}})
    assert asyncio.run(nested.execute([list_call]))[0].status == "denied"
    assert asyncio.run(inherited.execute([list_call]))[0].status == "denied"
    assert asyncio.run(nested.execute([_read("r1", "a.txt")]))[0].status == "ok"
