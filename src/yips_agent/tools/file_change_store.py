"""
Staged Change Store：两阶段文件写入（preview → apply）。

流程：
- `preview()`：读取当前内容（不存在视为空），生成 diff 预览，分配一次性 token；不触碰文件系统；
- `apply(token)`：校验 token（存在且未过期）与文件未被改动（内容 hash），原子写入（临时文件 + `os.replace`），
  删除 token，并调用可选的 post-write hook（hook 失败只记录日志，不影响 apply 结果）。

约束：
- 每个会话一个 store 实例（不得做成模块级单例）；
- token 单次有效：apply 成功后重放同一 token 返回 `invalid-or-expired-token`；
- 过期判定：`expires_at <= now`；
- 超过 `max_entries` 时按创建顺序淘汰最旧的条目。
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Literal, Optional

from yips_agent.core.utils import is_within_workspace

logger = logging.getLogger(__name__)

DEFAULT_TTL_SEC = 10 * 60
DEFAULT_MAX_ENTRIES = 50
DIFF_MAX_BODY_LINES = 80

FileChangeOperation = Literal["write_file", "edit_file"]
ApplyFailureReason = Literal["invalid-or-expired-token", "outside-working-zone", "stale-preview", "apply-write-failed"]

PostWriteHook = Callable[[str, str], None]


def hash_content(text: str) -> str:
    """内容 sha256（hex）。"""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def build_diff_preview(before: str, after: str, *, max_body_lines: int = DIFF_MAX_BODY_LINES) -> str:
    """
    生成单 hunk 的 diff 预览（去掉公共前缀/后缀后的差异段）。

    返回：
    - 内容相同：`No content changes.`
    - 否则：`--- before` / `+++ after` / `@@ -a,b +c,d @@` 头 + `-`/`+` 行（超出上限时截断并注明）
    """

    if before == after:
        return "No content changes."

    old_lines = before.split("\n")
    new_lines = after.split("\n")
    prefix = 0
    while prefix < len(old_lines) and prefix < len(new_lines) and old_lines[prefix] == new_lines[prefix]:
        prefix += 1

    old_end = len(old_lines) - 1
    new_end = len(new_lines) - 1
    while old_end >= prefix and new_end >= prefix and old_lines[old_end] == new_lines[new_end]:
        old_end -= 1
        new_end -= 1

    removed = old_lines[prefix : old_end + 1]
    added = new_lines[prefix : new_end + 1]
    body = [f"-{line}" for line in removed] + [f"+{line}" for line in added]

    shown = body[:max_body_lines]
    if len(body) > max_body_lines:
        shown.append(f"... truncated {len(body) - max_body_lines} additional diff lines ...")

    header = ["--- before", "+++ after", f"@@ -{prefix + 1},{len(removed)} +{prefix + 1},{len(added)} @@"]
    return "\n".join(header + shown)


def _read_text_or_none(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None


def write_file_atomic(path: Path, content: str) -> None:
    """原子写入：同目录临时文件 + `os.replace`；失败时清理临时文件并抛出原异常。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.yips-tmp-{uuid.uuid4().hex}")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except OSError:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


@dataclass(frozen=True)
class StagedChange:
    """已预览、尚未应用的文件修改。"""

    token: str
    operation: FileChangeOperation
    path: str
    before_content: str
    after_content: str
    diff_preview: str
    content_hash_before: str
    created_at: float
    expires_at: float

    @property
    def expires_at_iso(self) -> str:
        return _iso(self.expires_at)


@dataclass(frozen=True)
class ApplyOutcome:
    """
    apply 的结果。

    字段：
    - ok：是否已写入
    - reason：失败原因标签（ok=True 时为 None）
    - message：可读说明
    - change：对应的 StagedChange（token 未知/过期时为 None）
    - hook_error：post-write hook 失败信息（不影响 ok）
    """

    ok: bool
    message: str
    reason: Optional[ApplyFailureReason] = None
    change: Optional[StagedChange] = None
    hook_error: Optional[str] = None


class StagedChangeStore:
    """会话级的 staged change 存储。"""

    def __init__(
        self,
        *,
        ttl_sec: float = DEFAULT_TTL_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        post_write_hook: Optional[PostWriteHook] = None,
    ) -> None:
        """
        参数：
        - ttl_sec：token 有效期（秒）
        - max_entries：最多保留的未应用条目数
        - clock：时间源（测试可注入）
        - post_write_hook：可选；apply 成功后以 `(path, new_content)` 调用
        """

        self._ttl_sec = float(ttl_sec)
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._hook = post_write_hook
        self._entries: "OrderedDict[str, StagedChange]" = OrderedDict()

    def __len__(self) -> int:
        self.cleanup_expired()
        return len(self._entries)

    def tokens(self) -> List[str]:
        """当前有效的 token 列表（按创建顺序）。"""

        self.cleanup_expired()
        return list(self._entries.keys())

    def preview(self, path: Path | str, new_content: str, *, operation: FileChangeOperation = "write_file") -> StagedChange:
        """
        登记一次文件修改预览。

        参数：
        - path：目标文件绝对路径（调用方负责解析）
        - new_content：完整新内容
        - operation：`write_file` 或 `edit_file`

        异常：
        - OSError：目标存在但不可读（例如权限不足）
        - UnicodeDecodeError：目标不是 UTF-8 文本
        """

        self.cleanup_expired()
        target = Path(path)
        before = _read_text_or_none(target) or ""
        now = self._clock()
        change = StagedChange(
            token=str(uuid.uuid4()),
            operation=operation,
            path=str(target),
            before_content=before,
            after_content=new_content,
            diff_preview=build_diff_preview(before, new_content),
            content_hash_before=hash_content(before),
            created_at=now,
            expires_at=now + self._ttl_sec,
        )
        self._entries[change.token] = change
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted staged change %s (max_entries=%d)", evicted, self._max_entries)
        return change

    def get(self, token: str) -> Optional[StagedChange]:
        """按 token 查找（过期视为不存在）。"""

        self.cleanup_expired()
        return self._entries.get(token)

    def consume(self, token: str) -> Optional[StagedChange]:
        """取出并删除 token 对应的条目。"""

        self.cleanup_expired()
        return self._entries.pop(token, None)

    def cleanup_expired(self) -> None:
        """删除所有已过期条目。"""

        now = self._clock()
        for token in [t for t, c in self._entries.items() if c.expires_at <= now]:
            del self._entries[token]

    def apply(self, token: str, *, workspace_root: Optional[Path] = None) -> ApplyOutcome:
        """
        应用一次预览。

        参数：
        - token：preview 返回的 token
        - workspace_root：可选；提供时拒绝写入 workspace 之外的目标

        返回：
        - ApplyOutcome（永不抛异常；失败时文件不被修改）
        """

        change = self.get(token)
        if change is None:
            return ApplyOutcome(ok=False, reason="invalid-or-expired-token", message="token is invalid or expired.")

        target = Path(change.path)
        if workspace_root is not None and not is_within_workspace(workspace_root, target.resolve()):
            return ApplyOutcome(
                ok=False, reason="outside-working-zone", message="path is outside the working zone.", change=change
            )

        try:
            current = _read_text_or_none(target) or ""
        except UnicodeDecodeError:
            # 预览后目标被改写为非 UTF-8 内容
            current = None
        except OSError as exc:
            return ApplyOutcome(ok=False, reason="apply-write-failed", message=str(exc), change=change)
        if current is None or hash_content(current) != change.content_hash_before:
            return ApplyOutcome(
                ok=False,
                reason="stale-preview",
                message="file changed since preview; re-run preview.",
                change=change,
            )

        try:
            write_file_atomic(target, change.after_content)
        except OSError as exc:
            return ApplyOutcome(ok=False, reason="apply-write-failed", message=str(exc), change=change)

        self.consume(token)
        return ApplyOutcome(ok=True, message=f"Applied {change.operation} for {change.path}", change=change, hook_error=self._run_hook(change))

    def _run_hook(self, change: StagedChange) -> Optional[str]:
        if self._hook is None:
            return None
        try:
            self._hook(change.path, change.after_content)
        except Exception as exc:
            logger.warning("Post-write hook failed for %s", change.path, exc_info=True)
            return str(exc) or type(exc).__name__
        return None
