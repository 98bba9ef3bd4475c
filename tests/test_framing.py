import json

import pytest

from acp_client.errors import ProtocolError
from acp_client.framing import MAX_HEADER_SIZE, ContentLengthCodec, NewlineCodec, codec_for, parse_header
from acp_client.schema import ErrorObject, Notification, Request, Response, dump_message, parse_message


def _frame(obj) -> bytes:
    body = json.dumps(obj).encode("utf-8")
    return b"Content-Length: %d\r\n\r\n" % len(body) + body


REQUEST = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": 1}}
UPDATE = {
    "jsonrpc": "2.0",
    "method": "session/update",
    "params": {"sessionId": "s", "update": {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "héllo"}}},
}
RESULT = {"jsonrpc": "2.0", "id": 1, "result": {"stopReason": "end_turn"}}


def test_newline_decoding_ignores_read_boundaries():
    data = b"".join(json.dumps(m).encode() + b"\n" for m in (REQUEST, UPDATE, RESULT))

    whole = NewlineCodec().feed(data)
    codec = NewlineCodec()
    trickled = []
    for i in range(len(data)):
        trickled.extend(codec.feed(data[i : i + 1]))

    assert [type(m) for m in whole] == [Request, Notification, Response]
    assert trickled == whole
    assert codec.pending == 0


def test_header_split_at_every_offset():
    data = _frame(UPDATE) + _frame(RESULT)
    expected = ContentLengthCodec().feed(data)
    assert len(expected) == 2

    for cut in range(1, len(data)):
        codec = ContentLengthCodec()
        got = codec.feed(data[:cut]) + codec.feed(data[cut:])
        assert got == expected, cut
        assert codec.pending == 0


def test_header_waits_for_full_body():
    frame = _frame(REQUEST)
    codec = ContentLengthCodec()
    assert codec.feed(frame[:-5]) == []
    assert codec.pending == len(frame) - 5
    [message] = codec.feed(frame[-5:])
    assert isinstance(message, Request)
    assert message.params == {"protocolVersion": 1}


def test_header_codec_skips_newlines_between_frames_and_extra_headers():
    body = json.dumps(RESULT).encode()
    data = (
        _frame(REQUEST)
        + b"\r\n"
        + b"Content-Type: application/vscode-jsonrpc; charset=utf-8\r\ncontent-length: %d\r\n\r\n" % len(body)
        + body
    )
    messages = ContentLengthCodec().feed(data)
    assert [type(m) for m in messages] == [Request, Response]


def test_malformed_line_is_dropped_and_decoding_continues():
    data = b'{"jsonrpc": "2.0", "id": \n\n[1, 2]\n' + json.dumps(UPDATE).encode() + b"\n"
    messages = NewlineCodec().feed(data)
    assert len(messages) == 1
    assert messages[0].method == "session/update"


def test_bad_header_and_bad_body_are_dropped():
    bad_body = b"Content-Length: 5\r\n\r\n{nope"
    bad_header = b"Content-Length: abc\r\n\r\n"
    data = bad_header + bad_body + _frame(RESULT)
    messages = ContentLengthCodec().feed(data)
    assert len(messages) == 1
    assert isinstance(messages[0], Response)


def test_oversized_frame_is_rejected():
    codec = ContentLengthCodec(max_message_size=10)
    messages = codec.feed(b"Content-Length: 11\r\n\r\n" + _frame(RESULT))
    assert messages == []


ROUND_TRIP = [
    Request(id=7, method="session/prompt", params={"sessionId": "s", "prompt": [{"type": "text", "text": "ünïcode ✓"}]}),
    Notification(method="session/update", params=UPDATE["params"]),
    Response(id=4, result=None),
    Response(id="a-1", result={"stopReason": "end_turn"}),
    Response(id=9, error=ErrorObject(code=-32002, message="Resource not found", data={"uri": "README.md"})),
]


@pytest.mark.parametrize("framing", ["newline", "header"])
def test_decode_of_encode_is_the_same_message(framing):
    encoder = codec_for(framing)
    data = b"".join(encoder.encode(message) for message in ROUND_TRIP)

    assert codec_for(framing).feed(data) == ROUND_TRIP
    assert "result" in dump_message(ROUND_TRIP[2])


def test_unterminated_line_is_bounded():
    codec = NewlineCodec(max_message_size=64)
    assert codec.feed(b"x" * 100) == []
    assert codec.pending == 0

    [message] = codec.feed(b"tail of the long line\n" + json.dumps(RESULT).encode() + b"\n")
    assert isinstance(message, Response)
    assert codec.pending == 0


def test_header_without_terminator_is_bounded():
    codec = ContentLengthCodec()
    assert codec.feed(b"X-Garbage: " + b"a" * (MAX_HEADER_SIZE + 1)) == []
    assert codec.pending == 0

    [message] = codec.feed(b"\r\n\r\n" + _frame(REQUEST))
    assert isinstance(message, Request)
    assert codec.pending == 0


def test_parse_header():
    assert parse_header(b"Content-Length: 12\r\nContent-Type: x") == {"Content-Length": "12", "Content-Type": "x"}
    for bad in (b"", b"Content-Type: x", b"Content-Length: -1", b"no colon here", "Content-Length: ü".encode("utf-8")):
        with pytest.raises(ProtocolError):
            parse_header(bad)


def test_parse_message_variants():
    assert isinstance(parse_message({"jsonrpc": "2.0", "id": "a", "method": "m"}), Request)
    assert isinstance(parse_message({"jsonrpc": "2.0", "method": "m"}), Notification)
    error = parse_message({"jsonrpc": "2.0", "id": 2, "error": {"code": -32601, "message": "Method not found"}})
    assert isinstance(error, Response) and error.is_error
    for bad in ([1], "x", {"jsonrpc": "2.0"}, {"jsonrpc": "2.0", "id": 1, "method": 5}):
        with pytest.raises(ProtocolError):
            parse_message(bad)


def test_codec_for_names():
    assert isinstance(codec_for("ndjson"), NewlineCodec)
    assert isinstance(codec_for("LSP"), ContentLengthCodec)
    with pytest.raises(ValueError):
        codec_for("xml")
