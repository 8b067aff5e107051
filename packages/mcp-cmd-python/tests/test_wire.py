from __future__ import annotations

import json

import pytest

from mcp_cmd.core.errors import MalformedMessageError
from mcp_cmd.runtime.wire import (
    LineDecoder,
    RpcRequest,
    RpcResponse,
    decode_request,
    encode_request,
    encode_response,
    split_lines,
    try_parse_response,
)


def test_split_lines_keeps_partial_tail() -> None:
    lines, rest = split_lines(b"", b'{"id":"1"}\n{"id":')
    assert lines == [b'{"id":"1"}']
    assert rest == b'{"id":'

    lines, rest = split_lines(rest, b'"2"}\n')
    assert lines == [b'{"id":"2"}']
    assert rest == b""


def test_split_lines_drops_blank_lines() -> None:
    lines, rest = split_lines(b"", b"\n  \n{}\n\n")
    assert lines == [b"{}"]
    assert rest == b""


def test_line_decoder_handles_utf8_split_across_chunks() -> None:
    line = encode_request(RpcRequest(id="1", method="callTool", params={"name": "echo", "arguments": {"text": "héllo"}}))
    cut = line.index("é".encode("utf-8")) + 1
    decoder = LineDecoder()

    assert decoder.feed(line[:cut]) == []
    assert decoder.pending == line[:cut]
    out = decoder.feed(line[cut:])

    assert len(out) == 1
    req = decode_request(out[0])
    assert req.params == {"name": "echo", "arguments": {"text": "héllo"}}
    assert decoder.pending == b""


def test_line_decoder_yields_back_to_back_requests_in_order() -> None:
    data = encode_request(RpcRequest(id="a", method="listTools")) + encode_request(RpcRequest(id="b", method="listTools"))
    decoder = LineDecoder()
    ids = [decode_request(line).id for line in decoder.feed(data)]
    assert ids == ["a", "b"]


def test_encode_request_omits_missing_params() -> None:
    obj = json.loads(encode_request(RpcRequest(id="1", method="listTools")))
    assert obj == {"id": "1", "method": "listTools"}


def test_encoded_messages_are_single_lines() -> None:
    raw = encode_response(RpcResponse(id="1", result={"text": "a\nb"}))
    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1


def test_response_carries_result_or_error_only() -> None:
    ok = json.loads(encode_response(RpcResponse(id="1", result=None)))
    assert ok == {"id": "1", "result": None}

    err = json.loads(encode_response(RpcResponse(id="1", result={"x": 1}, error="boom")))
    assert err == {"id": "1", "error": "boom"}


def test_arguments_survive_codec_with_key_order_and_large_ints() -> None:
    args = {"z": 1, "a": {"nested": [1, 2, {"k": None}]}, "big": 2**70, "f": 1.5, "s": "ü"}
    line = encode_request(RpcRequest(id="1", method="callTool", params={"name": "t", "arguments": args}))
    req = decode_request(line.rstrip(b"\n"))
    assert req.params is not None
    assert req.params["arguments"] == args
    assert list(req.params["arguments"].keys()) == ["z", "a", "big", "f", "s"]


@pytest.mark.parametrize(
    "line",
    [
        b"not json",
        b"[1, 2]",
        b'{"method": "listTools"}',
        b'{"id": "1"}',
        b'{"id": "1", "method": 3}',
        b'{"id": "1", "method": "callTool", "params": []}',
        b"\xff\xfe",
    ],
)
def test_decode_request_rejects_malformed_lines(line: bytes) -> None:
    with pytest.raises(MalformedMessageError):
        decode_request(line)


def test_try_parse_response_waits_for_complete_json() -> None:
    raw = encode_response(RpcResponse(id="1", result={"text": "ok"}))
    assert try_parse_response(b"") is None
    assert try_parse_response(raw[:5]) is None
    resp = try_parse_response(raw)
    assert resp is not None
    assert resp.ok
    assert resp.result == {"text": "ok"}


def test_try_parse_response_reports_error_field() -> None:
    resp = try_parse_response(b'{"id": "9", "error": "RuntimeError: boom"}')
    assert resp is not None
    assert not resp.ok
    assert resp.error == "RuntimeError: boom"


def test_try_parse_response_rejects_non_object() -> None:
    with pytest.raises(MalformedMessageError):
        try_parse_response(b"[1]")
