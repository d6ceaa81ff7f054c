"""
yips-agent CLI（chat / config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- `main()` 返回 exit code（不直接 sys.exit，便于测试）
- `config` 子命令向 stdout 输出机器可读 JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO

from yips_agent.config.loader import YipsConfig, load_config
from yips_agent.core.contracts import EVENT_ASSISTANT_TEXT, EVENT_WARNING, AgentEvent
from yips_agent.core.errors import BackendUnavailableError, FrameworkError
from yips_agent.core.run_errors import render_request_failure
from yips_agent.core.session import AgentSession
from yips_agent.llm.openai_chat import ChatCompletionsBackend
from yips_agent.safety.approvals import ApprovalDecision, ApprovalRequest

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_REQUEST_FAILED = 1
EXIT_USAGE = 2

_EXIT_WORDS = ("/exit", "/quit")


class ConsoleApprovalProvider:
    """
    交互式审批：在终端询问操作员。

    输入：
    - `y`/`yes`：本次放行
    - `a`/`always`：本会话内同类动作放行
    - 其它（含空行/EOF）：拒绝
    """

    def __init__(self, *, out: Optional[TextIO] = None) -> None:
        self._out = out or sys.stderr

    async def request_approval(
        self,
        *,
        request: ApprovalRequest,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalDecision:
        reasons = ", ".join(request.reasons) or "confirm"
        self._out.write(f"\n[approval] {request.summary}\n")
        self._out.write(f"[approval] risk: {reasons}\n")
        self._out.flush()
        try:
            answer = await asyncio.to_thread(input, "Allow? [y]es / [a]lways / [N]o: ")
        except EOFError:
            return ApprovalDecision.DENIED
        choice = answer.strip().lower()
        if choice in ("y", "yes"):
            return ApprovalDecision.APPROVED
        if choice in ("a", "always"):
            return ApprovalDecision.APPROVED_FOR_SESSION
        return ApprovalDecision.DENIED


class _ConsoleRenderer:
    """把 streaming 增量与事件渲染到终端。"""

    def __init__(self, *, out: TextIO, err: TextIO) -> None:
        self._out = out
        self._err = err
        self._streamed = False

    def on_delta(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()
        self._streamed = True

    def on_event(self, event: AgentEvent) -> None:
        if event.type == EVENT_ASSISTANT_TEXT:
            if self._streamed:
                self._out.write("\n")
                self._streamed = False
            if not event.payload.get("rendered"):
                self._out.write(f"{event.payload.get('text', '')}\n")
            self._out.flush()
        elif event.type == EVENT_WARNING:
            self._err.write(f"[warning] {event.payload.get('message', '')}\n")
            self._err.flush()


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(prog="yips-agent", description="Local tool-using conversational agent.")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument(
            "--log-level",
            default="WARNING",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: WARNING).",
        )

    chat = root_sub.add_parser("chat", help="Chat with the agent (REPL, or one prompt with --prompt)")
    _add_common_flags(chat)
    chat.add_argument("--prompt", default=None, help="Run a single turn with this prompt and exit.")
    chat.add_argument("--context-file", default=None, help="Project context file injected as a system message.")
    chat.add_argument("--no-skills", action="store_true", help="Disable skills (search/fetch/build/todos/...).")

    config = root_sub.add_parser("config", help="Configuration commands")
    config_sub = config.add_subparsers(dest="config_cmd", required=True)
    show = config_sub.add_parser("show", help="Print the effective configuration as JSON")
    _add_common_flags(show)
    show.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    return parser


def _resolve_workspace_root(raw: str) -> Path:
    ws = Path(raw).expanduser().resolve()
    if not ws.is_dir():
        raise FrameworkError(
            code="CLI_WORKSPACE_ROOT_NOT_FOUND",
            message="Workspace root is not found or not a directory.",
            details={"workspace_root": str(ws)},
        )
    return ws


def _load_effective_config(workspace_root: Path, overlays: List[str]) -> YipsConfig:
    """加载默认配置 + overlays（相对路径相对 workspace_root）。"""

    paths: List[Path] = []
    for raw in overlays:
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = workspace_root / p
        paths.append(p.resolve())
    return load_config(paths)


def _read_context_file(workspace_root: Path, raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = workspace_root / p
    return p.read_text(encoding="utf-8")


def _print_issue(exc: FrameworkError, err: TextIO) -> None:
    issue = exc.to_issue()
    payload: Dict[str, Any] = {"code": issue.code, "message": issue.message}
    if issue.details:
        payload["details"] = issue.details
    err.write(json.dumps({"error": payload}, ensure_ascii=False, default=str) + "\n")


async def _run_chat(args: argparse.Namespace, config: YipsConfig, workspace_root: Path) -> int:
    renderer = _ConsoleRenderer(out=sys.stdout, err=sys.stderr)
    session = AgentSession(
        config=config,
        backend=ChatCompletionsBackend(config.llm),
        workspace_root=workspace_root,
        approval_provider=ConsoleApprovalProvider(),
        project_context=_read_context_file(workspace_root, args.context_file),
        enable_skills=not args.no_skills,
        emit=renderer.on_event,
        on_delta=renderer.on_delta,
    )

    async def _one(text: str) -> bool:
        try:
            await session.run_turn(text)
        except BackendUnavailableError as exc:
            sys.stderr.write(render_request_failure(exc) + "\n")
            return False
        return True

    if args.prompt is not None:
        return EXIT_OK if await _one(args.prompt) else EXIT_REQUEST_FAILED

    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            return EXIT_OK
        text = line.strip()
        if not text:
            continue
        if text in _EXIT_WORDS:
            return EXIT_OK
        await _one(text)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", EXIT_USAGE)
        return EXIT_USAGE if code is None else int(code)

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    try:
        workspace_root = _resolve_workspace_root(args.workspace_root)
        config = _load_effective_config(workspace_root, args.config)
    except FrameworkError as exc:
        _print_issue(exc, sys.stderr)
        return EXIT_USAGE

    if args.command == "config":
        indent = 2 if args.pretty else None
        print(json.dumps(config.model_dump(mode="json"), ensure_ascii=False, indent=indent))
        return EXIT_OK

    try:
        return asyncio.run(_run_chat(args, config, workspace_root))
    except KeyboardInterrupt:
        return EXIT_OK
    except OSError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
