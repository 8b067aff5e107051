"""
Launcher：spawn 后台 worker、等待 ready 握手、写入 registry；以及 stop。

说明：
- worker 以 `start_new_session=True` 启动（脱离 launcher 的进程组/终端），launcher 退出后继续运行；
- ready 握手走私有管道（`mcp_cmd.runtime.control`），不经过 worker 的 stdout/stderr；
- worker 的 stdout/stderr 追加写入与 socket 同目录的日志文件，便于排查后台失败。
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
import signal
import subprocess
import sys
import time
from typing import Dict, Optional, Union

from mcp_cmd.config.loader import McpCmdRuntimeConfig
from mcp_cmd.core.errors import (
    AlreadyRunningError,
    NotRunningError,
    OperationFailedError,
    SpawnFailedError,
    StartupTimeoutError,
)
from mcp_cmd.runtime.control import MSG_READY, wait_for_message
from mcp_cmd.runtime.paths import get_worker_paths
from mcp_cmd.runtime.registry import LocalLaunchSpec, RegistryEntry, RegistryStore, RemoteLaunchSpec
from mcp_cmd.runtime.supervisor import probe_pid

logger = logging.getLogger(__name__)

STOPPED = "stopped"
ALREADY_STOPPED = "already_stopped"


def _read_log_tail(path: Path, limit: int = 2000) -> str:
    """读取 worker 日志尾部（best-effort，用于错误详情）。"""

    try:
        data = path.read_bytes()
    except OSError:
        return ""
    return data[-limit:].decode("utf-8", errors="replace").strip()


def _worker_env() -> Dict[str, str]:
    """
    构造 worker 进程环境变量。

    说明：
    - 当前进程可能通过 `sys.path`（例如 pytest pythonpath）加载本包而环境变量里没有 `PYTHONPATH`；
      这里把包所在的 src 目录以绝对路径前置，保证 `python -m mcp_cmd.runtime.worker` 可导入。
    """

    import mcp_cmd  # local import to avoid circular

    env = dict(os.environ)
    src = str(Path(mcp_cmd.__file__).resolve().parent.parent)
    parts = [src]
    base = Path.cwd().resolve()
    for raw in str(env.get("PYTHONPATH") or "").split(os.pathsep):
        if not raw:
            continue
        p = Path(raw)
        if not p.is_absolute():
            p = (base / p).resolve()
        if str(p) not in parts:
            parts.append(str(p))
    env["PYTHONPATH"] = os.pathsep.join(parts)
    return env


def _terminate_worker(proc: subprocess.Popen, *, grace_sec: float = 2.0) -> None:
    """
    终止 worker 进程组并回收（SIGTERM，宽限期后 SIGKILL）。

    参数：
    - proc：worker 进程（pid 同时是 pgid）
    - grace_sec：SIGTERM 后等待秒数
    """

    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGTERM)
    try:
        proc.wait(timeout=grace_sec)
        return
    except subprocess.TimeoutExpired:
        pass
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)
    proc.wait()


def launch(
    name: str,
    spec: Union[LocalLaunchSpec, RemoteLaunchSpec],
    *,
    store: RegistryStore,
    runtime: Optional[McpCmdRuntimeConfig] = None,
    log_level: str = "INFO",
) -> RegistryEntry:
    """
    启动命名 worker 并在 ready 后写入 registry。

    参数：
    - name：server 名
    - spec：启动规格
    - store：registry
    - runtime：运行期配置（socket 目录/前缀、启动超时）
    - log_level：worker 日志级别

    返回：
    - RegistryEntry：新写入的条目

    异常：
    - AlreadyRunningError：registry 中已有同名条目（不做存活复核，避免重复绑定 socket）
    - SpawnFailedError：进程无法启动，或 worker 在 ready 前报告失败/退出
    - StartupTimeoutError：超时未收到 ready（worker 已被终止，registry 不变）
    """

    rt = runtime or McpCmdRuntimeConfig()
    if name in store.load():
        raise AlreadyRunningError(f'Server "{name}" is already running', details={"name": name})

    paths = get_worker_paths(name, socket_dir=rt.socket_dir, prefix=rt.socket_prefix)
    paths.log_path.parent.mkdir(parents=True, exist_ok=True)
    read_fd, write_fd = os.pipe()
    argv = [
        sys.executable,
        "-m",
        "mcp_cmd.runtime.worker",
        name,
        "--launch",
        spec.model_dump_json(),
        "--socket-path",
        str(paths.socket_path),
        "--control-fd",
        str(write_fd),
        "--log-level",
        log_level,
    ]
    try:
        with open(paths.log_path, "ab") as log_f:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                env=_worker_env(),
                stdin=subprocess.DEVNULL,
                stdout=log_f,
                stderr=log_f,
                start_new_session=True,
                close_fds=True,
                pass_fds=(write_fd,),
            )
    except OSError as exc:
        os.close(read_fd)
        raise SpawnFailedError(
            f'Failed to spawn worker for "{name}": {exc}',
            details={"name": name, "reason": str(exc)},
        ) from exc
    finally:
        os.close(write_fd)

    logger.debug("Spawned worker pid=%s for %r; waiting up to %ss", proc.pid, name, rt.startup_timeout_sec)
    try:
        msg = wait_for_message(read_fd, timeout_sec=rt.startup_timeout_sec)
    finally:
        os.close(read_fd)

    if msg is None:
        _terminate_worker(proc)
        raise StartupTimeoutError(
            f'Server "{name}" startup timeout',
            details={
                "name": name,
                "timeout_sec": rt.startup_timeout_sec,
                "log_path": str(paths.log_path),
                "log_tail": _read_log_tail(paths.log_path),
            },
        )
    if msg.type != MSG_READY or not msg.socket_path:
        _terminate_worker(proc)
        reason = msg.error or "worker exited before signalling readiness"
        raise SpawnFailedError(
            f'Server "{name}" failed to start: {reason}',
            details={"name": name, "log_path": str(paths.log_path), "log_tail": _read_log_tail(paths.log_path)},
        )

    entry = RegistryEntry(name=name, launch=spec, pid=proc.pid, socket_path=msg.socket_path)
    store.put(entry)
    logger.debug("Registered %r (pid=%s, socket=%s)", name, proc.pid, msg.socket_path)
    return entry


def stop(name: str, *, store: RegistryStore, grace_sec: float = 0.0) -> str:
    """
    停止命名 worker 并清理 registry 与 socket 文件。

    返回：
    - `STOPPED`：已发送 SIGTERM
    - `ALREADY_STOPPED`：进程早已不存在（仅清理）

    异常：
    - NotRunningError：registry 中无该条目
    - OperationFailedError：发送信号失败（例如权限不足；registry 不变）
    """

    entry = store.get(name)
    if entry is None:
        raise NotRunningError(f'Server "{name}" is not running', details={"name": name})

    outcome = STOPPED
    try:
        os.kill(entry.pid, signal.SIGTERM)
    except ProcessLookupError:
        outcome = ALREADY_STOPPED
    except OSError as exc:
        raise OperationFailedError(
            f'Failed to stop server "{name}": {exc}',
            details={"name": name, "pid": entry.pid, "reason": str(exc)},
        ) from exc

    if outcome == STOPPED and grace_sec > 0:
        deadline = time.monotonic() + grace_sec
        while time.monotonic() < deadline:
            with contextlib.suppress(OSError):
                if not probe_pid(entry.pid):
                    break
            time.sleep(0.05)

    with contextlib.suppress(OSError):
        Path(entry.socket_path).unlink()
    store.remove(name)
    return outcome
