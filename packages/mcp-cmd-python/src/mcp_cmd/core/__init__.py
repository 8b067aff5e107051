"""mcp-cmd 核心公共件（错误分类、stdio 工具）。"""
