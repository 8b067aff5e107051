"""
mcp-cmd CLI（start/stop/tools/call/ps）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- `tools`/`call` 成功时 stdout 输出 JSON（indent=2）；失败时 stderr 一行可读消息 + 非零 exit code；
- 日志只写 stderr，stdout 仅承载命令输出。
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

import yaml

from mcp_cmd import __version__
from mcp_cmd.bootstrap import resolve_config, resolve_registry_path
from mcp_cmd.config.loader import McpCmdConfig
from mcp_cmd.core.errors import (
    ConnectionClosedPrematurelyError,
    MalformedMessageError,
    McpCmdError,
    NotRunningError,
    RpcTimeoutError,
    UpstreamDispatchError,
    UsageError,
)
from mcp_cmd.core.utf8 import ensure_utf8_stdio
from mcp_cmd.runtime.client import RpcClient
from mcp_cmd.runtime.launcher import ALREADY_STOPPED, launch, stop
from mcp_cmd.runtime.registry import LocalLaunchSpec, RegistryEntry, RegistryStore, RemoteLaunchSpec
from mcp_cmd.runtime.supervisor import with_live_entry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_REMOTE_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class _CliContext:
    """一次 CLI 调用的有效配置与 registry。"""

    cwd: Path
    config: McpCmdConfig
    store: RegistryStore

    def rpc_client(self, entry: RegistryEntry) -> RpcClient:
        """为条目构造 RPC 客户端（带配置的 caller 侧超时）。"""

        return RpcClient(entry.socket_path, timeout_sec=self.config.runtime.effective_rpc_timeout())


def parse_env_vars(items: Optional[Sequence[str]]) -> Dict[str, str]:
    """
    解析重复的 `--env KEY=VALUE`。

    规则：
    - VALUE 可包含 `=`（只按第一个 `=` 切分）；
    - 仅有 KEY 时值为空串；后出现的同名 KEY 覆盖先出现的。
    """

    out: Dict[str, str] = {}
    for item in items or []:
        key, _, value = str(item).partition("=")
        if not key:
            raise UsageError(f"Invalid --env value: {item!r} (expected KEY=VALUE)")
        out[key] = value
    return out


def parse_target(words: Sequence[str], *, cwd: str, env: Dict[str, str]) -> Union[LocalLaunchSpec, RemoteLaunchSpec]:
    """
    把 start 的目标词解析为启动规格。

    规则：
    - 所有词以空格拼接后若是 http(s) 绝对 URL，则为远端规格；
    - 否则第一个词为 command，其余原样作为 args（不做选项解析）。
    """

    if not words:
        raise UsageError("start requires a URL or a command")
    joined = " ".join(words)
    parsed = urlparse(joined)
    if parsed.scheme in _REMOTE_SCHEMES and parsed.netloc and " " not in joined:
        return RemoteLaunchSpec(url=joined)
    return LocalLaunchSpec(command=words[0], args=list(words[1:]), cwd=cwd, env=env)


def _coerce_scalar(raw: str) -> Any:
    """命名参数取值：数字与 true/false 按 JSON 解码，其它保持字符串。"""

    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(value, (bool, int, float)):
        return value
    return raw


def parse_tool_arguments(tokens: Sequence[str]) -> Dict[str, Any]:
    """
    解析 `call` 的 tool 参数。

    规则：
    - `--key value` / `--key=value`：命名参数（见 `_coerce_scalar`）；重复出现时收集为列表；
    - 末尾无值的 `--flag`：true；
    - 其余位置参数以空格拼接后作为一个 JSON object 解析，并覆盖合并到命名参数之上。
    """

    args: Dict[str, Any] = {}
    positional: List[str] = []

    def _set(key: str, value: Any) -> None:
        """写入命名参数（重复 key 收集为列表）。"""

        if key in args:
            prev = args[key]
            args[key] = (prev if isinstance(prev, list) else [prev]) + [value]
        else:
            args[key] = value

    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.startswith("--") and len(tok) > 2:
            key, eq, value = tok[2:].partition("=")
            if eq:
                _set(key, _coerce_scalar(value))
            elif i + 1 < len(tokens) and not tokens[i + 1].startswith("--"):
                _set(key, _coerce_scalar(tokens[i + 1]))
                i += 1
            else:
                _set(key, True)
        else:
            positional.append(tok)
        i += 1

    if positional:
        text = " ".join(positional)
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            raise UsageError(f"Tool arguments are not valid JSON: {exc}", details={"input": text}) from exc
        if not isinstance(obj, dict):
            raise UsageError("Tool arguments JSON must be an object", details={"input": text})
        args.update(obj)
    return args


def _dump_json_to_stdout(obj: Any) -> None:
    """把结果以 indent=2 JSON 输出到 stdout。"""

    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _format_entry(name: str, entry: RegistryEntry) -> str:
    """ps 输出：名字一行 + 条目 YAML（缩进 2 空格）。"""

    body = yaml.safe_dump(entry.to_jsonable(), sort_keys=False, allow_unicode=True, default_flow_style=False)
    lines = [name] + ["  " + line for line in body.rstrip("\n").splitlines()]
    return "\n".join(lines)


def _absorb_start_options(args: argparse.Namespace) -> List[str]:
    """
    从 target 开头吸收写在 name 之后的 `--cwd`/`--env`。

    说明：
    - argparse 的 REMAINDER 会把 name 之后的一切都当作 target；
    - 只处理 target 开头连续的这两个选项，第一个其它词之后的内容原样交给 server。
    """

    target = list(args.target)
    while target:
        head = target[0]
        opt, eq, value = head.partition("=")
        if opt not in ("--cwd", "--env"):
            break
        if eq:
            target = target[1:]
        elif len(target) >= 2:
            value, target = target[1], target[2:]
        else:
            raise UsageError(f"{opt} requires a value")
        if opt == "--cwd":
            args.cwd = value
        else:
            args.env.append(value)
    return target


def _handle_start(args: argparse.Namespace, ctx: _CliContext) -> int:
    """start：spawn worker 并等待 ready。"""

    target = _absorb_start_options(args)
    cwd = str(Path(args.cwd).expanduser().resolve()) if args.cwd else str(ctx.cwd)
    spec = parse_target(target, cwd=cwd, env=parse_env_vars(args.env))
    entry = launch(
        args.name,
        spec,
        store=ctx.store,
        runtime=ctx.config.runtime,
        log_level=ctx.config.logging.level,
    )
    print(f'Started server "{args.name}" with PID {entry.pid}')
    return EXIT_OK


def _handle_stop(args: argparse.Namespace, ctx: _CliContext) -> int:
    """stop：SIGTERM worker，清理 socket 与 registry。"""

    outcome = stop(args.name, store=ctx.store, grace_sec=ctx.config.runtime.stop_grace_sec)
    if outcome == ALREADY_STOPPED:
        print(f'Server "{args.name}" was already stopped')
    else:
        print(f'Stopped server "{args.name}"')
    return EXIT_OK


_RPC_FAILURES = (UpstreamDispatchError, ConnectionClosedPrematurelyError, MalformedMessageError, RpcTimeoutError)


def _rpc_on_live_entry(ctx: _CliContext, name: str, rpc: Callable[[RpcClient], Any]) -> Any:
    """经 supervisor 确认存活后发起 RPC；RPC 失败的消息统一加上 `Operation failed for "N":` 前缀。"""

    def _operation(entry: RegistryEntry) -> Any:
        """对存活条目执行 RPC。"""

        try:
            return rpc(ctx.rpc_client(entry))
        except _RPC_FAILURES as exc:
            raise type(exc)(
                f'Operation failed for "{name}": {exc.message}',
                details={**exc.details, "name": name},
            ) from exc

    return with_live_entry(ctx.store, name, _operation)


def _handle_tools(args: argparse.Namespace, ctx: _CliContext) -> int:
    """tools：列出上游 tools。"""

    result = _rpc_on_live_entry(ctx, args.name, lambda client: client.list_tools())
    _dump_json_to_stdout(result)
    return EXIT_OK


def _handle_call(args: argparse.Namespace, ctx: _CliContext) -> int:
    """call：调用上游 tool。"""

    arguments = parse_tool_arguments(list(args.arguments))
    result = _rpc_on_live_entry(ctx, args.name, lambda client: client.call_tool(args.tool, arguments))
    _dump_json_to_stdout(result)
    return EXIT_OK


def _handle_ps(args: argparse.Namespace, ctx: _CliContext) -> int:
    """ps：列出 registry 条目（仅展示，不做存活检查）。"""

    entries = ctx.store.load()
    if args.name:
        entry = entries.get(args.name)
        if entry is None:
            raise NotRunningError(f'Server "{args.name}" is not running', details={"name": args.name})
        print(_format_entry(args.name, entry))
        return EXIT_OK

    if not entries:
        print("No servers running")
        return EXIT_OK
    for name, entry in entries.items():
        print(_format_entry(name, entry))
        print()
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="mcp-cmd",
        description="Keep MCP servers running in the background and call their tools from the command line.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr.")

    start = root_sub.add_parser("start", help="Start an mcp server")
    _add_common_flags(start)
    start.add_argument("--cwd", default=None, help="Working directory for the server (default: current directory)")
    start.add_argument("--env", action="append", default=[], metavar="KEY=VALUE", help="Set environment variables (repeatable)")
    start.add_argument("name", help="Server name")
    start.add_argument("target", nargs=argparse.REMAINDER, help="URL, or command followed by its arguments")

    stop_p = root_sub.add_parser("stop", help="Stop an mcp server")
    _add_common_flags(stop_p)
    stop_p.add_argument("name", help="Server name")

    tools = root_sub.add_parser("tools", help="List tools for an mcp server")
    _add_common_flags(tools)
    tools.add_argument("name", help="Server name")

    call = root_sub.add_parser(
        "call",
        help="Call a tool on an mcp server. Pass arguments as JSON or named arguments.",
    )
    _add_common_flags(call)
    call.add_argument("name", help="Server name")
    call.add_argument("tool", help="Tool name")
    call.add_argument("arguments", nargs=argparse.REMAINDER, help="JSON object and/or --key value pairs")

    ps = root_sub.add_parser("ps", help="List running servers or show details for a specific server")
    _add_common_flags(ps)
    ps.add_argument("name", nargs="?", default=None, help="Server name")

    return parser


_HANDLERS = {
    "start": _handle_start,
    "stop": _handle_stop,
    "tools": _handle_tools,
    "call": _handle_call,
    "ps": _handle_ps,
}


def _configure_logging(*, verbose: bool) -> None:
    """CLI 日志：stderr，默认仅 WARNING 以上；`-v` 时 DEBUG。"""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _report_error(exc: McpCmdError) -> None:
    """把结构化错误输出为 stderr 可读消息（启动失败时附带 worker 日志尾部）。"""

    print(exc.message, file=sys.stderr)
    tail = exc.details.get("log_tail") if isinstance(exc.details, dict) else None
    if tail:
        print("worker log (tail):", file=sys.stderr)
        for line in str(tail).splitlines():
            print(f"  {line}", file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse 约定：`--help`/`--version` 为 0，参数错误为 2
        code = getattr(exc, "code", EXIT_USAGE)
        if code is None:
            return EXIT_USAGE
        return int(code)

    _configure_logging(verbose=bool(getattr(args, "verbose", False)))

    cwd = Path.cwd().resolve()
    try:
        config = resolve_config(cwd=cwd, overlay_paths=list(args.config))
        ctx = _CliContext(cwd=cwd, config=config, store=RegistryStore(resolve_registry_path(config, cwd=cwd)))
        return _HANDLERS[args.command](args, ctx)
    except UsageError as exc:
        _report_error(exc)
        return EXIT_USAGE
    except McpCmdError as exc:
        logger.debug("Command %s failed: %s details=%s", args.command, exc, exc.details)
        _report_error(exc)
        return EXIT_FAILED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
