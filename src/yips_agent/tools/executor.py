"""
Workspace 工具执行器（read_file / list_dir / grep / run_command / 两阶段写入）。

约束：
- 所有路径相对 workspace root 解析；
- 执行器永不抛异常：任何失败都表示为 `status=error` 的 ToolResult；
- `write_file`/`edit_file` 为 legacy 名称，统一转换为 staged preview（`metadata.legacyTranslated=true`），
  真正写入必须通过 `apply_file_change`。
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from yips_agent.core.utils import resolve_in_workspace
from yips_agent.tools.command import DEFAULT_MAX_OUTPUT_BYTES, run_shell_command
from yips_agent.tools.file_change_store import StagedChange, StagedChangeStore
from yips_agent.tools.protocol import (
    ApplyFileChangeCall,
    EditFileCall,
    GrepCall,
    ListDirCall,
    PreviewWriteFileCall,
    ReadFileCall,
    RunCommandCall,
    ToolCall,
    ToolResult,
    WriteFileCall,
)

logger = logging.getLogger(__name__)


def _err_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _staged_metadata(change: StagedChange, *, legacy: bool, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "token": change.token,
        "path": change.path,
        "operation": change.operation,
        "diffPreview": change.diff_preview,
        "bytesBefore": len(change.before_content),
        "bytesAfter": len(change.after_content),
        "expiresAt": change.expires_at_iso,
    }
    if extra:
        meta.update(extra)
    if legacy:
        meta["legacyTranslated"] = True
    return meta


def scan_matching_lines(root: Path, regex: "re.Pattern[str]", *, max_matches: int) -> List[str]:
    """
    在文件或目录树中逐行匹配正则，返回 `path:line:text` 列表。

    说明：
    - 跳过以 `.` 开头的目录与文件；按名称排序遍历，结果可复现；
    - 非 UTF-8 文本或不可读文件直接跳过。
    """

    if root.is_file():
        files = [root]
    else:
        files = []
        for dirpath, dirnames, filenames in os.walk(root, topdown=True, followlinks=False):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            files.extend(Path(dirpath) / f for f in sorted(filenames) if not f.startswith("."))

    matches: List[str] = []
    for file in files:
        if len(matches) >= max_matches:
            break
        try:
            with file.open("r", encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, start=1):
                    if regex.search(line):
                        matches.append(f"{file}:{lineno}:{line.rstrip()}")
                        if len(matches) >= max_matches:
                            break
        except (OSError, UnicodeDecodeError):
            continue
    return matches


class WorkspaceToolExecutor:
    """
    单会话的工具执行器。

    参数：
    - workspace_root：会话 workspace 根目录
    - store：会话级 StagedChangeStore
    - max_output_bytes：命令输出保留上限
    """

    def __init__(
        self,
        *,
        workspace_root: Path,
        store: StagedChangeStore,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self._root = Path(workspace_root).resolve()
        self._store = store
        self._max_output_bytes = max_output_bytes

    @property
    def workspace_root(self) -> Path:
        return self._root

    @property
    def store(self) -> StagedChangeStore:
        return self._store

    async def execute(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        """按顺序执行，输出与输入同序同数量。"""

        results: List[ToolResult] = []
        for call in calls:
            try:
                results.append(await self._execute_one(call))
            except Exception as exc:
                logger.warning("Tool %s (%s) raised unexpectedly", call.name, call.id, exc_info=True)
                results.append(ToolResult.error(call.id, call.name, f"{call.name} failed: {_err_text(exc)}"))
        return results

    async def _execute_one(self, call: ToolCall) -> ToolResult:
        if isinstance(call, ReadFileCall):
            return self._read_file(call)
        if isinstance(call, (PreviewWriteFileCall, WriteFileCall)):
            return self._preview_write(call, legacy=isinstance(call, WriteFileCall))
        if isinstance(call, EditFileCall):
            return self._preview_edit(call)
        if isinstance(call, ApplyFileChangeCall):
            return self._apply(call)
        if isinstance(call, ListDirCall):
            return self._list_dir(call)
        if isinstance(call, GrepCall):
            return self._grep(call)
        if isinstance(call, RunCommandCall):
            return await self._run_command(call)
        return ToolResult.error(call.id, call.name, f"Unsupported tool: {call.name}")

    # ----------------------------
    # read / list / grep
    # ----------------------------

    def _read_file(self, call: ReadFileCall) -> ToolResult:
        raw = call.arguments.path.strip()
        if not raw:
            return ToolResult.error(call.id, call.name, "read_file requires a non-empty 'path' argument.")
        path = resolve_in_workspace(self._root, raw)
        max_bytes = call.arguments.max_bytes
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return ToolResult.error(call.id, call.name, f"read_file failed: {_err_text(exc)}", {"path": str(path)})
        clipped = content[:max_bytes]
        truncated = len(clipped) < len(content)
        output = f"{clipped}\n\n[truncated at {max_bytes} bytes]" if truncated else clipped
        return ToolResult.ok(call.id, call.name, output, {"path": str(path), "maxBytes": max_bytes, "truncated": truncated})

    def _list_dir(self, call: ListDirCall) -> ToolResult:
        path = resolve_in_workspace(self._root, call.arguments.path.strip() or ".")
        try:
            entries = list(os.scandir(path))
        except OSError as exc:
            return ToolResult.error(call.id, call.name, f"list_dir failed: {_err_text(exc)}", {"path": str(path)})
        lines = sorted(f"{'dir ' if e.is_dir() else 'file'} {e.name}" for e in entries)
        return ToolResult.ok(call.id, call.name, "\n".join(lines), {"path": str(path), "count": len(lines)})

    def _grep(self, call: GrepCall) -> ToolResult:
        pattern = call.arguments.pattern.strip()
        if not pattern:
            return ToolResult.error(call.id, call.name, "grep requires a non-empty 'pattern' argument.")
        root = resolve_in_workspace(self._root, call.arguments.path.strip() or ".")
        max_matches = call.arguments.max_matches
        meta = {"path": str(root), "maxMatches": max_matches}
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return ToolResult.error(call.id, call.name, f"grep failed: invalid pattern: {exc}", meta)
        if not root.exists():
            return ToolResult.error(call.id, call.name, f"grep failed: path does not exist: {root}", meta)

        matches = scan_matching_lines(root, regex, max_matches=max_matches)
        meta["count"] = len(matches)
        return ToolResult.ok(call.id, call.name, "\n".join(matches), meta)

    # ----------------------------
    # staged writes
    # ----------------------------

    def _preview_write(self, call: PreviewWriteFileCall | WriteFileCall, *, legacy: bool) -> ToolResult:
        raw = call.arguments.path.strip()
        if not raw:
            return ToolResult.error(call.id, call.name, f"{call.name} requires a non-empty 'path' argument.")
        path = resolve_in_workspace(self._root, raw)
        try:
            change = self._store.preview(path, call.arguments.content, operation="write_file")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.error(call.id, call.name, f"preview_write_file failed: {_err_text(exc)}", {"path": str(path)})
        return ToolResult.ok(
            call.id,
            call.name,
            f"Staged write for {change.path}\nToken: {change.token}\n{change.diff_preview}",
            _staged_metadata(change, legacy=legacy),
        )

    def _preview_edit(self, call: EditFileCall) -> ToolResult:
        args = call.arguments
        raw = args.path.strip()
        if not raw:
            return ToolResult.error(call.id, call.name, f"{call.name} requires a non-empty 'path' argument.")
        path = resolve_in_workspace(self._root, raw)
        try:
            before = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.error(call.id, call.name, f"preview_edit_file failed: {_err_text(exc)}", {"path": str(path)})
        if not args.old_text or args.old_text not in before:
            return ToolResult.error(
                call.id, call.name, "preview_edit_file failed: 'oldText' was not found in file.", {"path": str(path)}
            )
        if args.replace_all:
            after = before.replace(args.old_text, args.new_text)
        else:
            after = before.replace(args.old_text, args.new_text, 1)
        try:
            change = self._store.preview(path, after, operation="edit_file")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.error(call.id, call.name, f"preview_edit_file failed: {_err_text(exc)}", {"path": str(path)})
        return ToolResult.ok(
            call.id,
            call.name,
            f"Staged edit for {change.path}\nToken: {change.token}\n{change.diff_preview}",
            _staged_metadata(change, legacy=True, extra={"replaceAll": args.replace_all}),
        )

    def _apply(self, call: ApplyFileChangeCall) -> ToolResult:
        token = call.arguments.token.strip()
        if not token:
            return ToolResult.error(
                call.id,
                call.name,
                "apply_file_change requires a non-empty 'token' argument.",
                {"token": "", "reason": "missing-token"},
            )
        outcome = self._store.apply(token, workspace_root=self._root)
        if not outcome.ok:
            meta: Dict[str, Any] = {"token": token, "reason": outcome.reason}
            if outcome.change is not None:
                meta["path"] = outcome.change.path
            return ToolResult.error(call.id, call.name, f"apply_file_change failed: {outcome.message}", meta)

        change = outcome.change
        assert change is not None
        output = f"{outcome.message}\n{change.diff_preview}"
        meta = {
            "path": change.path,
            "operation": change.operation,
            "token": token,
            "applied": True,
            "diffPreview": change.diff_preview,
        }
        if outcome.hook_error:
            output = f"{output}\nPost-write hook failed: {outcome.hook_error}"
            meta["hookError"] = outcome.hook_error
        return ToolResult.ok(call.id, call.name, output, meta)

    # ----------------------------
    # commands
    # ----------------------------

    async def _run_command(self, call: RunCommandCall) -> ToolResult:
        command = call.arguments.command.strip()
        if not command:
            return ToolResult.error(call.id, call.name, "run_command requires a non-empty 'command' argument.")
        cwd = resolve_in_workspace(self._root, call.arguments.cwd.strip() or ".")
        try:
            result = await run_shell_command(
                command, cwd=cwd, timeout_ms=call.arguments.timeout_ms, max_output_bytes=self._max_output_bytes
            )
        except OSError as exc:
            return ToolResult.error(call.id, call.name, f"run_command failed: {_err_text(exc)}", {"cwd": str(cwd)})
        if result.exit_code == 0:
            status = "ok"
        elif result.timed_out:
            status = "timeout"
        else:
            status = "error"
        return ToolResult(
            call_id=call.id,
            tool=call.name,
            status=status,
            output=result.output,
            metadata={"exitCode": result.exit_code, "timedOut": result.timed_out, "cwd": str(cwd)},
        )
