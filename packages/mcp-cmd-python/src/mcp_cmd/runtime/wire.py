"""
本地 socket 线协议编解码（newline-delimited UTF-8 JSON）。

协议：
- 请求：`{"id": string, "method": "listTools"|"callTool", "params"?: {"name": string, "arguments": object}}`
- 响应：`{"id": string, "result"?: any, "error"?: string}`

说明：
- worker 侧按行切分：一次读到的字节可能包含半行或多行，`LineDecoder` 保留尾部残行；
- caller 侧每个连接只有一次请求/响应，直接尝试把累计字节整体解析为一个 JSON object。
"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Mapping, Optional, Tuple

from mcp_cmd.core.errors import MalformedMessageError

METHOD_LIST_TOOLS = "listTools"
METHOD_CALL_TOOL = "callTool"
METHODS = (METHOD_LIST_TOOLS, METHOD_CALL_TOOL)


@dataclass(frozen=True)
class RpcRequest:
    """一次 RPC 请求（仅在途）。"""

    id: Any
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为线上 JSON object（params 为空时省略）。"""

        obj: Dict[str, Any] = {"id": self.id, "method": self.method}
        if self.params is not None:
            obj["params"] = self.params
        return obj


@dataclass(frozen=True)
class RpcResponse:
    """一次 RPC 响应；`error` 非空时 `result` 无意义。"""

    id: Any
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """是否为成功响应。"""

        return self.error is None

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为线上 JSON object（`result` 与 `error` 只出现其一）。"""

        if self.error is not None:
            return {"id": self.id, "error": self.error}
        return {"id": self.id, "result": self.result}


def split_lines(buffer: bytes, data: bytes) -> Tuple[List[bytes], bytes]:
    """
    纯函数：把新到的字节追加到残行 buffer 后按 `\\n` 切分。

    参数：
    - buffer：上次切分后保留的残行
    - data：本次读到的字节

    返回：
    - (complete_lines, remaining)：完整行（不含换行符，已去掉空白行）与新的残行
    """

    parts = (buffer + data).split(b"\n")
    remaining = parts.pop()
    return [p for p in parts if p.strip()], remaining


class LineDecoder:
    """每连接一个的行缓冲解码器（append-only buffer + `split_lines`）。"""

    def __init__(self) -> None:
        """创建空 buffer。"""

        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """尚未凑成完整行的残余字节。"""

        return self._buffer

    def feed(self, data: bytes) -> List[bytes]:
        """喂入一段字节，返回其中凑齐的完整行。"""

        lines, self._buffer = split_lines(self._buffer, data)
        return lines


def encode_message(obj: Mapping[str, Any]) -> bytes:
    """把一个 JSON object 编码为一行（UTF-8，末尾 `\\n`）。"""

    return (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def encode_request(request: RpcRequest) -> bytes:
    """编码请求行。"""

    return encode_message(request.to_jsonable())


def encode_response(response: RpcResponse) -> bytes:
    """编码响应行。"""

    return encode_message(response.to_jsonable())


def decode_request(line: bytes) -> RpcRequest:
    """
    解析一行请求。

    异常：
    - MalformedMessageError：不是合法 UTF-8 JSON object，或缺少 `id`/`method`，或 params 不是 object
    """

    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError("Request line is not valid JSON.", details={"reason": str(exc)}) from exc
    if not isinstance(obj, dict):
        raise MalformedMessageError("Request must be a JSON object.", details={"actual": type(obj).__name__})
    if "id" not in obj:
        raise MalformedMessageError("Request is missing `id`.")
    method = obj.get("method")
    if not isinstance(method, str) or not method:
        raise MalformedMessageError("Request `method` must be a non-empty string.", details={"id": obj.get("id")})
    params = obj.get("params")
    if params is not None and not isinstance(params, dict):
        raise MalformedMessageError("Request `params` must be an object.", details={"id": obj.get("id")})
    return RpcRequest(id=obj["id"], method=method, params=params)


def try_parse_response(data: bytes) -> Optional[RpcResponse]:
    """
    尝试把累计字节整体解析为一个响应。

    返回：
    - RpcResponse：解析成功
    - None：数据尚不完整（JSON 截断或 UTF-8 多字节序列被切开），应继续读取

    异常：
    - MalformedMessageError：数据是完整 JSON 但不是 object
    """

    if not data.strip():
        return None
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(obj, dict):
        raise MalformedMessageError("Response must be a JSON object.", details={"actual": type(obj).__name__})
    error = obj.get("error")
    return RpcResponse(
        id=obj.get("id"),
        result=obj.get("result"),
        error=None if error is None else str(error),
    )
