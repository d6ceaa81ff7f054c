"""Token 估算与输出速率计算（backend 未报告 usage 时的兜底口径）。"""

from __future__ import annotations

import math
from typing import Iterable, Optional

from yips_agent.core.contracts import Message


def estimate_text_tokens(text: str) -> int:
    """
    估算一段文本的 token 数（约 4 字符 1 token；非空文本至少 1）。

    说明：
    - 按 code point 计数（非 UTF-8 字节）。
    """

    chars = len(text or "")
    if chars == 0:
        return 0
    return max(1, math.ceil(chars / 4))


def estimate_conversation_tokens(messages: Iterable[Message]) -> int:
    """估算整段历史的 token 数（逐条累加；空消息不计）。"""

    return sum(estimate_text_tokens(m.content) for m in messages)


def compute_tokens_per_second(tokens: float, duration_ms: float) -> Optional[float]:
    """
    计算输出速率（tokens/s）。

    返回：
    - tokens 或 duration 非正数、非有限值时返回 None
    """

    try:
        t = float(tokens)
        d = float(duration_ms)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(t) and math.isfinite(d)):
        return None
    if t <= 0 or d <= 0:
        return None
    return t / (d / 1000.0)
