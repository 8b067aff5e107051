"""
上游 MCP 连接适配（基于 `mcp` Python SDK）。

worker 只依赖这里暴露的四个操作：`connect` / `list_tools` / `call_tool` / `close`。
能力协商、传输编码等细节全部由 `mcp.ClientSession` 负责。
"""

from __future__ import annotations

from contextlib import AsyncExitStack
import logging
from typing import Any, Dict, Union

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import get_default_environment, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from mcp_cmd import __version__
from mcp_cmd.runtime.registry import LocalLaunchSpec, RemoteLaunchSpec

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-cmd"


def _to_jsonable(obj: Any) -> Any:
    """把 SDK 返回的 pydantic 模型投影为可 JSON 序列化结构（保持字段别名，省略空字段）。"""

    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        return dump(mode="json", by_alias=True, exclude_none=True)
    return obj


def build_stdio_parameters(spec: LocalLaunchSpec) -> StdioServerParameters:
    """
    把本地启动规格转为 stdio 参数。

    说明：
    - env = SDK 默认安全环境变量集合（PATH/HOME 等）+ 用户覆盖（后者优先）。
    """

    env = {**get_default_environment(), **spec.env}
    return StdioServerParameters(command=spec.command, args=list(spec.args), env=env, cwd=spec.cwd)


class UpstreamConnection:
    """
    已完成 initialize 的上游会话。

    说明：
    - 同一连接可被多个在途请求并发调用（SDK 自身按 request id 关联响应）；
    - `close()` 必须在进入 exit stack 的同一个 task 中调用。
    """

    def __init__(self, session: ClientSession, exit_stack: AsyncExitStack) -> None:
        """
        参数：
        - session：已 initialize 的 ClientSession
        - exit_stack：持有传输层与 session 的上下文栈
        """

        self._session = session
        self._exit_stack = exit_stack

    async def list_tools(self) -> Dict[str, Any]:
        """列出上游 tools（返回 `ListToolsResult` 的 JSON 投影）。"""

        return _to_jsonable(await self._session.list_tools())

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """调用上游 tool（返回 `CallToolResult` 的 JSON 投影）。"""

        return _to_jsonable(await self._session.call_tool(name, arguments))

    async def close(self) -> None:
        """关闭 session 与传输层（本地 spawn 时会终止上游进程）。"""

        await self._exit_stack.aclose()


async def connect(spec: Union[LocalLaunchSpec, RemoteLaunchSpec]) -> UpstreamConnection:
    """
    建立上游连接并完成 initialize 握手。

    参数：
    - spec：本地 spawn 或远端 URL

    异常：
    - 任意传输/协议异常原样抛出（由 worker 报告给 launcher）
    """

    stack = AsyncExitStack()
    try:
        if isinstance(spec, RemoteLaunchSpec):
            logger.debug("Connecting to remote MCP endpoint %s", spec.url)
            read, write, _get_session_id = await stack.enter_async_context(streamablehttp_client(spec.url))
        else:
            logger.debug("Spawning MCP server %s %s (cwd=%s)", spec.command, spec.args, spec.cwd)
            read, write = await stack.enter_async_context(stdio_client(build_stdio_parameters(spec)))
        session = await stack.enter_async_context(
            ClientSession(read, write, client_info=Implementation(name=CLIENT_NAME, version=__version__))
        )
        await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return UpstreamConnection(session, stack)
