"""配置加载（内置默认 YAML + overlays + pydantic 校验）。"""

from __future__ import annotations

from mcp_cmd.config.loader import McpCmdConfig, load_config, load_config_dicts

__all__ = ["McpCmdConfig", "load_config", "load_config_dicts"]
