"""
后台 worker 进程：持有一个上游 MCP 连接，并在本地 Unix socket 上提供 line-delimited JSON-RPC。

状态机：`connecting -> serving -> shutting_down -> terminated`

- connecting：按启动规格建立上游连接；失败时经控制通道报告并以非零状态退出；
- serving：绑定 socket、发送 ready、接受连接；每个连接独立的行缓冲，每个请求独立异步 dispatch；
- shutting_down：收到 SIGTERM/SIGINT 后停止接受连接、放弃在途请求、关闭上游、删除 socket 文件；
- terminated：进程退出。

入口：`python -m mcp_cmd.runtime.worker <name> --launch <json> --socket-path <path> [--control-fd <fd>]`
（由 launcher 调用，不面向用户）。
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import enum
import logging
import os
from pathlib import Path
import signal
import stat
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Set, Tuple

from pydantic import TypeAdapter

from mcp_cmd.core.errors import MalformedMessageError
from mcp_cmd.runtime.control import ControlWriter
from mcp_cmd.runtime.registry import LaunchSpec
from mcp_cmd.runtime.upstream import connect as connect_upstream
from mcp_cmd.runtime.wire import (
    METHOD_CALL_TOOL,
    METHOD_LIST_TOOLS,
    LineDecoder,
    RpcRequest,
    RpcResponse,
    decode_request,
    encode_response,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


class Connection(Protocol):
    """worker 依赖的上游连接最小接口。"""

    async def list_tools(self) -> Any:
        """列出 tools。"""

    async def call_tool(self, name: str, arguments: dict) -> Any:
        """调用 tool。"""

    async def close(self) -> None:
        """关闭连接。"""


class WorkerState(str, enum.Enum):
    """worker 生命周期状态。"""

    CONNECTING = "connecting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


def _stringify_failure(exc: BaseException) -> str:
    """把 dispatch 异常转为响应中的 error 字符串。"""

    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


async def dispatch(connection: Connection, request: RpcRequest) -> RpcResponse:
    """
    把一个请求路由到上游连接。

    语义：
    - `listTools`：无参数；`callTool`：转发 `params.name` / `params.arguments`；
    - 任何失败（上游拒绝、超时、参数不合法、未知方法）都转成 `{id, error}`，不会向外抛出。
    """

    try:
        if request.method == METHOD_LIST_TOOLS:
            result = await connection.list_tools()
        elif request.method == METHOD_CALL_TOOL:
            params = request.params or {}
            name = params.get("name")
            if not isinstance(name, str) or not name:
                raise ValueError("callTool requires params.name (string)")
            arguments = params.get("arguments")
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, dict):
                raise ValueError("callTool params.arguments must be an object")
            result = await connection.call_tool(name, arguments)
        else:
            raise ValueError(f"unknown method: {request.method}")
    except Exception as exc:
        logger.warning("Dispatch of %s (id=%r) failed: %s", request.method, request.id, exc)
        return RpcResponse(id=request.id, error=_stringify_failure(exc))
    return RpcResponse(id=request.id, result=result)


class RpcServer:
    """
    Unix socket 上的 JSON-RPC 服务端。

    说明：
    - 每个已接受连接有私有的 `LineDecoder` 与写锁；连接之间除上游连接外不共享可变状态；
    - 同一连接内响应按“完成顺序”写回（dispatch 为异步，不保证与到达顺序一致）；
    - 非法行：记录 warning，停止读取该连接，等已 dispatch 的请求写回后关闭该连接（不影响其它连接）。
    """

    def __init__(self, *, name: str, connection: Connection, socket_path: Path) -> None:
        """
        参数：
        - name：server 名（日志前缀）
        - connection：上游连接
        - socket_path：监听路径
        """

        self._name = name
        self._connection = connection
        self._socket_path = Path(socket_path)
        self._server: Optional[asyncio.AbstractServer] = None
        self._handlers: Set[asyncio.Task[Any]] = set()
        self._bound_identity: Optional[Tuple[int, int]] = None

    @property
    def socket_path(self) -> Path:
        """监听路径。"""

        return self._socket_path

    async def start(self) -> None:
        """
        绑定并开始监听（权限 0600）。

        说明：
        - 同路径上残留的旧 socket（上一代 worker 异常退出留下）会先被删除。
        """

        self._socket_path.parent.mkdir(parents=True, exist_ok=True)
        with contextlib.suppress(FileNotFoundError):
            if self._socket_path.is_socket():
                self._socket_path.unlink()
        self._server = await asyncio.start_unix_server(self._handle_connection, path=str(self._socket_path))
        os.chmod(self._socket_path, stat.S_IRUSR | stat.S_IWUSR)
        st = self._socket_path.stat()
        self._bound_identity = (st.st_dev, st.st_ino)

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """单连接处理：读字节 -> 切行 -> 每行一个 dispatch task。"""

        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        decoder = LineDecoder()
        write_lock = asyncio.Lock()
        inflight: Set[asyncio.Task[None]] = set()
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    break
                try:
                    for line in decoder.feed(chunk):
                        request = decode_request(line)
                        t = asyncio.create_task(self._serve_request(request, writer, write_lock))
                        inflight.add(t)
                        t.add_done_callback(inflight.discard)
                except MalformedMessageError as exc:
                    logger.warning("[%s] Closing connection after malformed message: %s", self._name, exc)
                    break
            if inflight:
                await asyncio.gather(*inflight, return_exceptions=True)
        except asyncio.CancelledError:
            for t in list(inflight):
                t.cancel()
            raise
        except ConnectionError as exc:
            logger.debug("[%s] Socket error: %s", self._name, exc)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            if task is not None:
                self._handlers.discard(task)

    async def _serve_request(self, request: RpcRequest, writer: asyncio.StreamWriter, write_lock: asyncio.Lock) -> None:
        """dispatch 一个请求并写回响应行。"""

        response = await dispatch(self._connection, request)
        async with write_lock:
            if writer.is_closing():
                return
            try:
                writer.write(encode_response(response))
                await writer.drain()
            except ConnectionError as exc:
                logger.debug("[%s] Response for id=%r dropped: %s", self._name, request.id, exc)

    async def close(self) -> None:
        """停止接受新连接，并放弃所有已接受连接上的在途请求。"""

        if self._server is not None:
            self._server.close()
        handlers = list(self._handlers)
        for t in handlers:
            t.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

    def unlink_socket(self) -> bool:
        """
        删除本实例绑定的 socket 文件。

        说明：
        - stop 之后同名 server 可能已被重新 start 并在同一路径上绑定了新 socket；
          只有路径仍指向本实例绑定的那个文件（st_dev/st_ino 一致）时才删除。

        返回：
        - bool：是否删除
        """

        if self._bound_identity is None:
            return False
        try:
            st = self._socket_path.lstat()
        except FileNotFoundError:
            return False
        if (st.st_dev, st.st_ino) != self._bound_identity:
            logger.info("[%s] Socket %s was rebound by another worker; leaving it", self._name, self._socket_path)
            return False
        with contextlib.suppress(FileNotFoundError):
            self._socket_path.unlink()
        return True


class Worker:
    """
    单个命名 server 的后台 worker。

    参数（构造）：
    - name：server 名
    - launch：上游启动规格
    - socket_path：监听路径
    - control：控制通道写端（无 launcher 时可为 None）
    - connect：上游连接工厂（默认 `mcp_cmd.runtime.upstream.connect`）
    """

    def __init__(
        self,
        *,
        name: str,
        launch: Any,
        socket_path: Path,
        control: Optional[ControlWriter] = None,
        connect: Callable[[Any], Awaitable[Connection]] = connect_upstream,
    ) -> None:
        """创建 worker（尚未启动）。"""

        self._name = name
        self._launch = launch
        self._socket_path = Path(socket_path)
        self._control = control
        self._connect = connect
        self._stop: Optional[asyncio.Event] = None
        self.state = WorkerState.CONNECTING

    def request_shutdown(self, sig: Optional[int] = None) -> None:
        """请求进入 shutting_down（信号处理器与测试共用）。"""

        if sig is not None:
            logger.info("[%s] Received signal %s", self._name, signal.Signals(sig).name)
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        """SIGTERM（stop）与 SIGINT（终端中断）都触发关闭流程。"""

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown, sig)

    def _report_failure(self, reason: str) -> None:
        """经控制通道报告启动失败。"""

        if self._control is not None:
            self._control.send_error(reason)

    async def run(self, *, install_signal_handlers: bool = True) -> int:
        """
        运行完整生命周期。

        返回：
        - int：进程 exit code（0 正常关闭；1 启动失败）
        """

        self._stop = asyncio.Event()
        self.state = WorkerState.CONNECTING
        logger.info("[%s] Starting MCP server...", self._name)
        try:
            connection = await self._connect(self._launch)
        except Exception as exc:
            logger.error("[%s] Failed to start: %s", self._name, exc, exc_info=True)
            self._report_failure(f"failed to connect to MCP server: {_stringify_failure(exc)}")
            self.state = WorkerState.TERMINATED
            return 1
        logger.info("[%s] Connected to MCP server", self._name)

        server = RpcServer(name=self._name, connection=connection, socket_path=self._socket_path)
        try:
            await server.start()
        except OSError as exc:
            logger.error("[%s] Failed to bind %s: %s", self._name, self._socket_path, exc)
            self._report_failure(f"failed to bind socket {self._socket_path}: {exc}")
            with contextlib.suppress(Exception):
                await connection.close()
            self.state = WorkerState.TERMINATED
            return 1

        if install_signal_handlers:
            self._install_signal_handlers()
        self.state = WorkerState.SERVING
        logger.info("[%s] JSON-RPC server listening on %s", self._name, self._socket_path)
        if self._control is not None:
            self._control.send_ready(str(self._socket_path))

        await self._stop.wait()

        self.state = WorkerState.SHUTTING_DOWN
        logger.info("[%s] Shutting down...", self._name)
        await server.close()
        try:
            await connection.close()
        except Exception:
            logger.warning("[%s] Error while closing MCP connection", self._name, exc_info=True)
        with contextlib.suppress(OSError):
            server.unlink_socket()
        self.state = WorkerState.TERMINATED
        return 0


def _build_parser() -> argparse.ArgumentParser:
    """构建 worker 入口参数解析器。"""

    parser = argparse.ArgumentParser(prog="mcp_cmd.runtime.worker", description="mcp-cmd background worker (internal).")
    parser.add_argument("name", help="Server name")
    parser.add_argument("--launch", required=True, help="Launch spec as JSON")
    parser.add_argument("--socket-path", required=True, help="Unix socket path to listen on")
    parser.add_argument("--control-fd", type=int, default=None, help="Inherited pipe fd for the readiness signal")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    模块入口：解析参数、配置日志（stderr，由 launcher 重定向到 worker 日志文件）并运行 worker。
    """

    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    control = ControlWriter(args.control_fd) if args.control_fd is not None else None
    launch = TypeAdapter(LaunchSpec).validate_json(args.launch)
    worker = Worker(name=args.name, launch=launch, socket_path=Path(args.socket_path), control=control)
    return asyncio.run(worker.run())


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
