"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class McpCmdRegistryConfig(BaseModel):
    """registry 文件位置。"""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(default=".mcp-cmd.json", min_length=1)


class McpCmdRuntimeConfig(BaseModel):
    """
    后台 worker / socket / RPC 参数。

    说明：
    - `socket_dir=None` 表示使用系统临时目录；
    - `rpc_timeout_sec=None` 表示 caller 侧无限等待（0 同义）。
    """

    model_config = ConfigDict(extra="forbid")

    socket_dir: Optional[str] = None
    socket_prefix: str = Field(default="mcp-cmd", min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    startup_timeout_sec: float = Field(default=60.0, gt=0)
    rpc_timeout_sec: Optional[float] = Field(default=None, ge=0)
    stop_grace_sec: float = Field(default=0.0, ge=0)

    def effective_rpc_timeout(self) -> Optional[float]:
        """返回 socket 可用的超时秒数（None 表示不设超时）。"""

        if not self.rpc_timeout_sec:
            return None
        return float(self.rpc_timeout_sec)


class McpCmdLoggingConfig(BaseModel):
    """日志级别。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class McpCmdConfig(BaseModel):
    """mcp-cmd 完整配置（校验后的有效配置）。"""

    model_config = ConfigDict(extra="forbid")

    registry: McpCmdRegistryConfig = Field(default_factory=McpCmdRegistryConfig)
    runtime: McpCmdRuntimeConfig = Field(default_factory=McpCmdRuntimeConfig)
    logging: McpCmdLoggingConfig = Field(default_factory=McpCmdLoggingConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """
    读取 YAML 文件并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或根节点不是 mapping
    """

    if not path.exists():
        raise ValueError(f"config file not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return obj


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> McpCmdConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `McpCmdConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return McpCmdConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> McpCmdConfig:
    """
    加载并合并多个配置文件，返回校验后的 `McpCmdConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    return load_config_dicts([_load_yaml_file(Path(p)) for p in config_paths])
