from __future__ import annotations

import logging
import secrets
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from mcp_cmd.core.errors import (
    ConnectionClosedPrematurelyError,
    MalformedMessageError,
    OperationFailedError,
    RpcTimeoutError,
    UpstreamDispatchError,
)
from mcp_cmd.runtime.wire import (
    METHOD_CALL_TOOL,
    METHOD_LIST_TOOLS,
    RpcRequest,
    encode_request,
    try_parse_response,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


def new_request_id() -> str:
    """生成本地唯一的请求 id。"""

    return secrets.token_hex(6)


class RpcClient:
    """
    worker socket 的 caller 侧客户端（短生命周期 CLI 使用）。

    说明：
    - 每次 `call` 新建一条连接，只发一个请求、只等一个响应，不复用/不多路复用；
    - 每收到一块数据就尝试把累计字节整体解析为 JSON object；
    - `timeout_sec=None` 时无限等待（worker 无响应会一直挂起）。
    """

    def __init__(self, socket_path: str | Path, *, timeout_sec: Optional[float] = None) -> None:
        """
        参数：
        - socket_path：worker socket 路径（取自 registry）
        - timeout_sec：连接/读取超时秒数；None 表示不设超时
        """

        self._socket_path = str(socket_path)
        self._timeout_sec = timeout_sec

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        发起一次 RPC 并返回 `result`。

        异常：
        - UpstreamDispatchError：响应携带 error
        - ConnectionClosedPrematurelyError：对端在完整响应到达前关闭连接
        - RpcTimeoutError：超过 timeout_sec
        - OperationFailedError：无法连接 socket
        - MalformedMessageError：响应不是 object，或 id 不匹配
        """

        request = RpcRequest(id=new_request_id(), method=method, params=params)
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(self._timeout_sec)
            try:
                s.connect(self._socket_path)
            except socket.timeout as exc:
                raise RpcTimeoutError(
                    f"Timed out connecting to {self._socket_path}",
                    details={"socket_path": self._socket_path},
                ) from exc
            except OSError as exc:
                raise OperationFailedError(
                    f"Cannot connect to {self._socket_path}: {exc}",
                    details={"socket_path": self._socket_path, "reason": str(exc)},
                ) from exc

            buf = b""
            try:
                s.sendall(encode_request(request))
                while True:
                    chunk = s.recv(_READ_CHUNK)
                    if not chunk:
                        raise ConnectionClosedPrematurelyError(
                            "Connection closed without response",
                            details={"socket_path": self._socket_path, "method": method, "received_bytes": len(buf)},
                        )
                    buf += chunk
                    response = try_parse_response(buf)
                    if response is not None:
                        break
            except socket.timeout as exc:
                raise RpcTimeoutError(
                    f"No response from {self._socket_path} within {self._timeout_sec}s",
                    details={"socket_path": self._socket_path, "method": method},
                ) from exc
            except (ConnectionResetError, BrokenPipeError) as exc:
                raise ConnectionClosedPrematurelyError(
                    f"Connection closed without response: {exc}",
                    details={"socket_path": self._socket_path, "method": method},
                ) from exc

        if response.id != request.id:
            raise MalformedMessageError(
                "Response id does not match request id.",
                details={"expected": request.id, "actual": response.id},
            )
        if response.error is not None:
            raise UpstreamDispatchError(response.error, details={"method": method})
        return response.result

    def list_tools(self) -> Any:
        """RPC：listTools。"""

        return self.call(METHOD_LIST_TOOLS)

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        """RPC：callTool。"""

        return self.call(METHOD_CALL_TOOL, {"name": name, "arguments": arguments})
