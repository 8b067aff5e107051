"""
Liveness Supervisor：对命名 server 执行操作前，惰性确认 worker 进程仍然存活。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, TypeVar

from mcp_cmd.core.errors import NotRunningError, OperationFailedError, ProcessGoneError
from mcp_cmd.runtime.registry import RegistryEntry, RegistryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_zombie(pid: int) -> bool:
    """Linux：`/proc/<pid>/stat` 状态为 `Z`（已退出未回收）。其它平台返回 False。"""

    try:
        text = Path(f"/proc/{int(pid)}/stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    # comm 字段可能含空格/括号，状态字段位于最后一个 `)` 之后
    fields = text[text.rfind(")") + 1 :].split()
    return bool(fields) and fields[0] == "Z"


def probe_pid(pid: int) -> bool:
    """
    用信号 0 探测进程是否存在（不影响目标进程）。

    返回：
    - True：进程存在
    - False：进程不存在（或已是 zombie）

    异常：
    - PermissionError 等其它 OSError 原样抛出，由调用方决定语义
    """

    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    return not _is_zombie(pid)


def with_live_entry(store: RegistryStore, name: str, operation: Callable[[RegistryEntry], T]) -> T:
    """
    在确认 worker 存活后执行 `operation(entry)`，并原样返回/抛出其结果。

    异常：
    - NotRunningError：registry 中无该条目
    - ProcessGoneError：进程已不存在（条目已从 registry 移除并保存）
    - OperationFailedError：探测失败（例如权限不足；registry 不变）
    """

    entry = store.get(name)
    if entry is None:
        raise NotRunningError(f'Server "{name}" is not running', details={"name": name})

    try:
        alive = probe_pid(entry.pid)
    except OSError as exc:
        raise OperationFailedError(
            f'Operation failed for "{name}": {exc}',
            details={"name": name, "pid": entry.pid, "reason": str(exc)},
        ) from exc

    if not alive:
        logger.info("Pruning stale registry entry %r (pid %s is gone)", name, entry.pid)
        store.remove(name)
        raise ProcessGoneError(
            f'Server "{name}" process is no longer running',
            details={"name": name, "pid": entry.pid},
        )
    return operation(entry)
