"""
launcher ⇄ worker 私有控制通道（一次性管道）。

协议：
- worker 在 socket 绑定成功后写入一行 `{"type": "ready", "socketAddress": "<path>"}` 并关闭写端；
- 上游连接失败时写入一行 `{"type": "error", "error": "<reason>"}` 后以非零状态退出；
- launcher 在截止时间前读不到任何消息视为超时；读到 EOF 视为 worker 提前退出。
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
import select
import time
from typing import Optional

MSG_READY = "ready"
MSG_ERROR = "error"
MSG_CLOSED = "closed"


@dataclass(frozen=True)
class ControlMessage:
    """launcher 收到的控制消息（`closed` 表示写端关闭且无完整消息）。"""

    type: str
    socket_path: Optional[str] = None
    error: Optional[str] = None


class ControlWriter:
    """worker 侧写端（只写一条消息）。"""

    def __init__(self, fd: int) -> None:
        """
        参数：
        - fd：launcher 通过 `pass_fds` 传入的管道写端
        """

        self._fd: Optional[int] = fd
        # worker 之后 spawn 的上游进程不应继承写端，否则 worker 退出后 launcher 读不到 EOF。
        os.set_inheritable(fd, False)

    def send_ready(self, socket_path: str) -> None:
        """发送 ready 信号（携带已绑定的 socket 路径）。"""

        self._send({"type": MSG_READY, "socketAddress": socket_path})

    def send_error(self, error: str) -> None:
        """报告启动失败原因。"""

        self._send({"type": MSG_ERROR, "error": error})

    def _send(self, obj: dict) -> None:
        """写入一行 JSON 并关闭写端；重复调用为 no-op。"""

        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            while data:
                n = os.write(fd, data)
                data = data[n:]
        except BrokenPipeError:
            # launcher 已放弃等待（超时/退出）
            pass
        finally:
            os.close(fd)


def _parse_message(line: bytes) -> ControlMessage:
    """解析一行控制消息；无法识别的内容按 error 处理。"""

    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return ControlMessage(type=MSG_ERROR, error=f"invalid control message: {line[:200]!r}")
    if not isinstance(obj, dict):
        return ControlMessage(type=MSG_ERROR, error="invalid control message")
    if obj.get("type") == MSG_READY and isinstance(obj.get("socketAddress"), str):
        return ControlMessage(type=MSG_READY, socket_path=obj["socketAddress"])
    return ControlMessage(type=MSG_ERROR, error=str(obj.get("error") or "worker reported an unknown failure"))


def wait_for_message(fd: int, *, timeout_sec: float) -> Optional[ControlMessage]:
    """
    在管道读端上等待一条控制消息。

    参数：
    - fd：管道读端
    - timeout_sec：最长等待秒数

    返回：
    - ControlMessage：ready / error / closed
    - None：超时
    """

    deadline = time.monotonic() + float(timeout_sec)
    buf = b""
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        readable, _, _ = select.select([fd], [], [], remaining)
        if not readable:
            return None
        chunk = os.read(fd, 65536)
        if not chunk:
            if buf.strip():
                return _parse_message(buf.strip())
            return ControlMessage(type=MSG_CLOSED)
        buf += chunk
        if b"\n" in buf:
            line, _, _rest = buf.partition(b"\n")
            return _parse_message(line)
