"""
Shell 命令执行（asyncio 子进程）。

说明：
- 命令以 shell 文本形式执行（`run_command`/`build`/`virtual_terminal` 共用）；
- 超时后终止整个进程组（POSIX 下子进程作为新 session leader）；
- 输出按尾部截断（保留最后 `max_output_bytes` 字节），避免大输出撑爆内存与上下文。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
TRUNCATE_MARKER = "...<truncated>\n"


class CommandResult(BaseModel):
    """
    命令执行结果（结构化）。

    字段：
    - exit_code：进程退出码；超时或无法启动时为 None
    - output：合并后的 stdout+stderr（可能被截断）
    - timed_out：是否因超时被终止
    - truncated：输出是否发生截断
    - duration_ms：耗时（毫秒）
    """

    model_config = ConfigDict(extra="forbid")

    exit_code: Optional[int] = None
    output: str = ""
    timed_out: bool = False
    truncated: bool = False
    duration_ms: int = Field(default=0, ge=0)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class _TailBuffer:
    """保留尾部的有界字节缓冲。"""

    def __init__(self, max_bytes: int) -> None:
        self._max_bytes = max(0, int(max_bytes))
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._buf.extend(chunk)
        overflow = len(self._buf) - self._max_bytes
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True

    def text(self) -> str:
        return bytes(self._buf).decode("utf-8", errors="replace")


async def _drain(stream: Optional[asyncio.StreamReader], buf: _TailBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        buf.append(chunk)


def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def run_shell_command(
    command: str,
    *,
    cwd: Path,
    timeout_ms: int,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CommandResult:
    """
    执行一条 shell 命令并捕获结果。

    参数：
    - command：shell 命令文本
    - cwd：工作目录（必须存在且为目录）
    - timeout_ms：超时毫秒数
    - max_output_bytes：输出保留上限（尾部）

    异常：
    - FileNotFoundError / NotADirectoryError：cwd 不存在或不是目录
    - OSError：子进程无法启动
    """

    cwd_path = Path(cwd)
    if not cwd_path.exists():
        raise FileNotFoundError(f"cwd does not exist: {cwd_path}")
    if not cwd_path.is_dir():
        raise NotADirectoryError(f"cwd is not a directory: {cwd_path}")

    start = time.monotonic()
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd_path),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=(os.name != "nt"),
    )
    buf = _TailBuffer(max_output_bytes)
    timed_out = False
    try:
        await asyncio.wait_for(asyncio.gather(_drain(proc.stdout, buf), proc.wait()), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        timed_out = True
        _kill_process_tree(proc)
        try:
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning("Process %s did not exit after kill", proc.pid)

    output = buf.text()
    if buf.truncated:
        output = f"{TRUNCATE_MARKER}{output}"
    return CommandResult(
        exit_code=None if timed_out else proc.returncode,
        output=output,
        timed_out=timed_out,
        truncated=buf.truncated,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
