"""
Bootstrap（CLI 启动期配置发现）。

发现顺序（后者覆盖前者）：
1) 内置默认配置 `mcp_cmd/assets/default.yaml`
2) `<cwd>/.mcp-cmd.yaml`（若存在）
3) 显式 overlays（CLI `--config`，可重复；相对路径相对 cwd）
4) 环境变量 `MCP_CMD_*`（空串或仅空白视为未设置）
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from mcp_cmd.config.defaults import load_default_config_dict
from mcp_cmd.config.loader import McpCmdConfig, load_config_dicts
from mcp_cmd.core.errors import ConfigError

DEFAULT_OVERLAY_NAME = ".mcp-cmd.yaml"

# env key -> (section, field)
_ENV_OVERRIDES = {
    "MCP_CMD_REGISTRY_PATH": ("registry", "path"),
    "MCP_CMD_SOCKET_DIR": ("runtime", "socket_dir"),
    "MCP_CMD_STARTUP_TIMEOUT_SEC": ("runtime", "startup_timeout_sec"),
    "MCP_CMD_RPC_TIMEOUT_SEC": ("runtime", "rpc_timeout_sec"),
    "MCP_CMD_LOG_LEVEL": ("logging", "level"),
}


def _get_env(key: str) -> Optional[str]:
    """读取 env；空串/仅空白视为未设置。"""

    v = os.environ.get(key)
    if v is None:
        return None
    s = v.strip()
    return s or None


def discover_overlay_paths(*, cwd: Path, explicit: Sequence[str] = ()) -> List[Path]:
    """
    overlay 路径发现（顺序稳定，按 canonical path 去重）。

    参数：
    - cwd：调用目录（相对路径锚点）
    - explicit：CLI 显式传入的 overlay 路径
    """

    base = Path(cwd).resolve()
    overlays: List[Path] = []
    default_overlay = base / DEFAULT_OVERLAY_NAME
    if default_overlay.exists():
        overlays.append(default_overlay.resolve())
    for raw in explicit:
        p = Path(raw).expanduser()
        overlays.append(p.resolve() if p.is_absolute() else (base / p).resolve())

    seen: set[Path] = set()
    uniq: List[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _env_overlay() -> Dict[str, Any]:
    """把 `MCP_CMD_*` 环境变量投影为 overlay dict（仅包含已设置的键）。"""

    out: Dict[str, Any] = {}
    for key, (section, field) in _ENV_OVERRIDES.items():
        v = _get_env(key)
        if v is None:
            continue
        value: Any = v
        if field == "level":
            value = v.upper()
        out.setdefault(section, {})[field] = value
    return out


def resolve_config(*, cwd: Path, overlay_paths: Sequence[str] = ()) -> McpCmdConfig:
    """
    解析有效配置（env > 显式 overlays > `.mcp-cmd.yaml` > 内置默认）。

    参数：
    - cwd：调用目录
    - overlay_paths：CLI `--config` 传入的路径（可空）

    异常：
    - ConfigError：overlay 缺失/非 mapping，或 schema 校验失败
    """

    dicts: List[Dict[str, Any]] = [load_default_config_dict()]
    for p in discover_overlay_paths(cwd=cwd, explicit=overlay_paths):
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}", details={"path": str(p)})
        try:
            obj = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file is not valid YAML: {p}", details={"path": str(p), "reason": str(exc)}) from exc
        if not isinstance(obj, dict):
            raise ConfigError(f"Config root must be a mapping: {p}", details={"path": str(p), "actual": type(obj).__name__})
        dicts.append(obj)
    dicts.append(_env_overlay())

    try:
        return load_config_dicts(dicts)
    except ValidationError as exc:
        raise ConfigError("Config is invalid.", details={"reason": str(exc)}) from exc


def resolve_registry_path(config: McpCmdConfig, *, cwd: Path) -> Path:
    """把 `registry.path` 解析为绝对路径（相对路径以 cwd 为锚点）。"""

    p = Path(config.registry.path).expanduser()
    if not p.is_absolute():
        p = Path(cwd).resolve() / p
    return p
