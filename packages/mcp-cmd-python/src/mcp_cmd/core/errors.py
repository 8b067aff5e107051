"""
mcp-cmd 错误分类（异常类型）。

说明：
- 所有可预期的运行期失败都以 `McpCmdError` 子类表达，携带稳定的英文 `code/message/details`；
- CLI 层统一把 `McpCmdError` 映射为 stderr 一行消息 + 非零 exit code；
- 未预期异常不在此列，应直接向上传播（属于缺陷）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class McpCmdIssue:
    """结构化问题对象（用于 JSON 输出/日志）。"""

    code: str
    message: str
    details: Dict[str, Any]


class McpCmdError(Exception):
    """mcp-cmd 错误基类（结构化 `code/message/details`）。"""

    code = "MCP_CMD_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建错误。

        参数：
        - `message`：英文可读错误消息（CLI 直接输出到 stderr）
        - `code`：稳定错误码；缺省使用子类的类属性 `code`
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> McpCmdIssue:
        """把异常转换为可序列化问题对象。"""

        return McpCmdIssue(code=self.code, message=self.message, details=dict(self.details))


class AlreadyRunningError(McpCmdError):
    """同名 server 已存在 registry 条目（start 被拒绝）。"""

    code = "ALREADY_RUNNING"


class NotRunningError(McpCmdError):
    """registry 中不存在该 server。"""

    code = "NOT_RUNNING"


class ProcessGoneError(McpCmdError):
    """registry 条目指向的 worker 进程已不存在（条目已被自动清理）。"""

    code = "PROCESS_GONE"


class StartupTimeoutError(McpCmdError):
    """worker 未在启动超时内发出 ready 信号（worker 已被终止）。"""

    code = "STARTUP_TIMEOUT"


class SpawnFailedError(McpCmdError):
    """worker 进程无法启动，或在 ready 之前报告失败/退出。"""

    code = "SPAWN_FAILED"


class UpstreamDispatchError(McpCmdError):
    """worker 对上游的 dispatch 失败（RPC 响应携带 error 字段）。"""

    code = "UPSTREAM_DISPATCH_FAILED"


class ConnectionClosedPrematurelyError(McpCmdError):
    """对端在返回任何可解析响应之前关闭了连接。"""

    code = "CONNECTION_CLOSED_PREMATURELY"


class MalformedMessageError(McpCmdError):
    """socket 上收到无法解析的消息行。"""

    code = "MALFORMED_MESSAGE"


class OperationFailedError(McpCmdError):
    """其它操作失败（例如 pid 探测权限不足）。"""

    code = "OPERATION_FAILED"


class RpcTimeoutError(McpCmdError):
    """caller 侧等待响应超时（仅在配置了 rpc_timeout_sec 时出现）。"""

    code = "RPC_TIMEOUT"


class ConfigError(McpCmdError):
    """配置加载/校验失败。"""

    code = "CONFIG_INVALID"


class UsageError(McpCmdError):
    """命令行输入不合法（例如 call 参数不是合法 JSON）。"""

    code = "USAGE_ERROR"
