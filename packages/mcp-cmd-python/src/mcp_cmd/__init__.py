"""
mcp-cmd：为 MCP server 保持常驻后台连接的命令行工具。

说明：
- `mcp-cmd start` 启动后台 worker（持有上游连接），`tools`/`call` 经本地 socket 复用该连接；
- 命令行入口见 `mcp_cmd.cli.main`，后台进程入口见 `mcp_cmd.runtime.worker`。
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
