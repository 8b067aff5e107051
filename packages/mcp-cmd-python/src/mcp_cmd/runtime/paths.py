from __future__ import annotations

from dataclasses import dataclass
import hashlib
from pathlib import Path
import re
import tempfile
from typing import Optional

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

# Linux 的 AF_UNIX 路径上限为 108 bytes（macOS 为 104）；留出余量。
_MAX_SOCKET_PATH_LEN = 100


@dataclass(frozen=True)
class WorkerPaths:
    """某个命名 server 的 worker 文件路径集合。"""

    socket_path: Path
    log_path: Path


def _hashed_key(name: str) -> str:
    """
    对 name 做 sha256 截断，得到文件名安全的 key。

    说明：
    - 以 `@` 开头；`@` 不在安全字符集内，因此与直接使用 name 的 key 永不冲突。
    """

    h = hashlib.sha256(name.encode("utf-8", errors="surrogatepass")).hexdigest()[:16]
    return f"@{h}"


def _base_dir(socket_dir: Optional[str | Path]) -> Path:
    """返回 socket 所在目录（默认系统临时目录）。"""

    if socket_dir is None or not str(socket_dir).strip():
        return Path(tempfile.gettempdir())
    return Path(socket_dir).expanduser()


def get_worker_paths(name: str, *, socket_dir: Optional[str | Path] = None, prefix: str = "mcp-cmd") -> WorkerPaths:
    """
    由 server name 确定性地推导 socket 路径（以及同名 worker 日志路径）。

    参数：
    - name：server 名（registry key）
    - socket_dir：socket 目录；None 表示系统临时目录
    - prefix：文件名前缀

    返回：
    - WorkerPaths：`<dir>/<prefix>-<key>.sock` 与 `<dir>/<prefix>-<key>.log`

    说明：
    - 纯函数：同一输入永远得到同一路径，launcher 与 worker 无需额外协调；
    - name 仅含 `[A-Za-z0-9_.-]` 时 key 即 name；否则（含 `/`、空白、非 ASCII 等）或路径超长时退化为哈希 key。
    """

    if not name:
        raise ValueError("server name must be non-empty")
    base = _base_dir(socket_dir)
    key = name if _SAFE_NAME_RE.match(name) else _hashed_key(name)
    socket_path = base / f"{prefix}-{key}.sock"
    if len(str(socket_path)) > _MAX_SOCKET_PATH_LEN:
        key = _hashed_key(name)
        socket_path = base / f"{prefix}-{key}.sock"
    return WorkerPaths(socket_path=socket_path, log_path=base / f"{prefix}-{key}.log")


def resolve_socket_path(name: str, *, socket_dir: Optional[str | Path] = None, prefix: str = "mcp-cmd") -> Path:
    """返回 `name` 对应的 socket 路径（见 `get_worker_paths`）。"""

    return get_worker_paths(name, socket_dir=socket_dir, prefix=prefix).socket_path
