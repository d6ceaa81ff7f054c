"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 内置默认配置 `yips_agent/assets/default.yaml` 总是作为第一层；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

import re
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from yips_agent.core.errors import UserError


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 整体覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class YipsLlmConfig(BaseModel):
    """LLM 连接配置（OpenAI-compatible chat.completions）。"""

    model_config = ConfigDict(extra="forbid")

    class Retry(BaseModel):
        """
        重试/退避策略。

        说明：
        - 仅在尚未输出任何文本时重试（避免重复渲染）；
        - base/cap/jitter 只影响“无 Retry-After 头”时的指数退避。
        """

        model_config = ConfigDict(extra="forbid")

        max_retries: int = Field(default=2, ge=0)
        base_delay_sec: float = Field(default=0.5, ge=0.0)
        cap_delay_sec: float = Field(default=8.0, ge=0.0)
        jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    base_url: str
    model: str
    api_key_env: Optional[str] = None
    timeout_sec: float = Field(default=120.0, gt=0)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    stream: bool = True
    retry: Retry = Field(default_factory=Retry)


class YipsRunConfig(BaseModel):
    """turn 循环参数。"""

    model_config = ConfigDict(extra="forbid")

    max_rounds: int = Field(default=6, ge=1)
    failure_pivot_threshold: int = Field(default=2, ge=1)
    subagent_max_rounds: int = Field(default=4, ge=1)
    max_subagent_depth: int = Field(default=1, ge=0)


class YipsSafetyConfig(BaseModel):
    """
    安全门禁配置。

    字段：
    - approval_timeout_ms：等待操作员确认的上限（None 表示不限制）
    - extra_destructive_patterns：追加的破坏性命令正则（与内置模式取并集）
    """

    model_config = ConfigDict(extra="forbid")

    approval_timeout_ms: Optional[int] = Field(default=None, ge=1)
    extra_destructive_patterns: list[str] = Field(default_factory=list)

    @field_validator("extra_destructive_patterns")
    @classmethod
    def _compile_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc
        return v


class YipsStagedChangesConfig(BaseModel):
    """两阶段写入参数。"""

    model_config = ConfigDict(extra="forbid")

    ttl_sec: float = Field(default=600.0, gt=0)
    max_entries: int = Field(default=50, ge=1)


class YipsToolsConfig(BaseModel):
    """工具/skill 执行参数。"""

    model_config = ConfigDict(extra="forbid")

    max_output_bytes: int = Field(default=64 * 1024, ge=1024)
    http_timeout_sec: float = Field(default=20.0, gt=0)


class YipsConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    llm: YipsLlmConfig
    run: YipsRunConfig = Field(default_factory=YipsRunConfig)
    safety: YipsSafetyConfig = Field(default_factory=YipsSafetyConfig)
    staged_changes: YipsStagedChangesConfig = Field(default_factory=YipsStagedChangesConfig)
    tools: YipsToolsConfig = Field(default_factory=YipsToolsConfig)

    @model_validator(mode="after")
    def _check_versions(self) -> "YipsConfig":
        if self.config_version != 1:
            raise ValueError(f"unsupported config_version: {self.config_version}")
        return self


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise UserError(f"配置文件不存在：{path}", code="CONFIG_NOT_FOUND", details={"path": str(path)})
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise UserError(f"配置文件不是合法 YAML：{path}", code="CONFIG_INVALID", details={"path": str(path)}) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UserError(f"配置文件根节点必须为 mapping(dict)：{path}", code="CONFIG_INVALID", details={"path": str(path)})
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> YipsConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `YipsConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置默认配置作为第一层

    异常：
    - UserError：校验失败（code=`CONFIG_INVALID`，details 含 pydantic 错误列表）
    """

    from yips_agent.config.defaults import load_default_config_dict

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return YipsConfig.model_validate(merged)
    except ValidationError as exc:
        raise UserError(
            "invalid configuration",
            code="CONFIG_INVALID",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def load_config(config_paths: list[Path]) -> YipsConfig:
    """
    加载并合并多个配置文件（叠加在内置默认配置之上）。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    return load_config_dicts([_load_yaml_file(Path(p)) for p in config_paths])
