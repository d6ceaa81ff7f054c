"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def compact_json(obj: Any) -> str:
    """序列化为紧凑 JSON（无多余空白；保留非 ASCII 字符）。"""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def resolve_in_workspace(workspace_root: Path, raw_path: str) -> Path:
    """
    将工具参数中的路径解析为绝对路径（相对路径基于 workspace_root）。

    说明：
    - 只做解析，不做“是否越界”的判断（见 `is_within_workspace`）。
    """

    p = Path(raw_path or ".").expanduser()
    if not p.is_absolute():
        p = Path(workspace_root) / p
    return p.resolve()


def is_within_workspace(workspace_root: Path, resolved: Path) -> bool:
    """判断已解析路径是否位于 workspace_root 之内（含 root 自身）。"""

    root = Path(workspace_root).resolve()
    try:
        resolved.relative_to(root)
    except ValueError:
        return False
    return True
