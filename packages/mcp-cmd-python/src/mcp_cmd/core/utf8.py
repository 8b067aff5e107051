"""
UTF-8 stdio 工具（CLI 入口用）。

说明：
- `C` locale 下 stdout/stderr 可能为 ASCII 编码；tool 列表/调用结果常包含非 ASCII 文本，
  直接 print 会触发 `UnicodeEncodeError`；
- 入口应尽早调用（在 argparse/help 或任何 print 之前）。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """
    best-effort 将 stdout/stderr reconfigure 为 UTF-8。

    行为：
    - 流对象支持 `reconfigure()` 时设置 `encoding="utf-8", errors="replace"`；
    - 失败时保持原状（不阻断 CLI 启动）。
    """

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            continue
