"""
CLI 模块。

说明：
- 对外入口为 `mcp-cmd ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）。
- CLI 仅做“配置加载 + 调用 runtime 能力 + 输出”，不应复制核心逻辑。
"""
