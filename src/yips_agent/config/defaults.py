"""
内置默认配置加载器。

设计目标：
- 作为库被引用时不依赖 repo 相对路径即可运行；
- 默认配置通过 `importlib.resources` 随 package 分发。
"""

from __future__ import annotations

from importlib.resources import files
from typing import Any, Dict

import yaml


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    异常：
    - RuntimeError：内容不是 mapping(dict)
    """

    text = files("yips_agent.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj
