"""Frame codecs turning a byte stream into JSON-RPC messages and back.

Two framings are understood:

- newline-delimited JSON, one message per line;
- header-delimited JSON as in the LSP base protocol::

      Content-Length: <length>\\r\\n
      [Content-Type: <type>]\\r\\n
      \\r\\n
      <json-rpc-message>

A codec keeps the bytes it could not consume yet, so callers may hand it
reads of any size: several frames at once, or a frame (header included)
split across reads. Frames that cannot be decoded are logged and dropped;
decoding always continues with the next frame.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

from .errors import ProtocolError
from .schema import Message, dump_message, parse_message

logger = logging.getLogger(__name__)

CONTENT_LENGTH = "Content-Length"
HEADER_ENCODING = "ascii"
CONTENT_ENCODING = "utf-8"
CRLF = b"\r\n"
HEADER_SEPARATOR = b"\r\n\r\n"
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024
MAX_HEADER_SIZE = 8 * 1024


def _decode_payload(payload: bytes) -> Message:
    try:
        obj = json.loads(payload.decode(CONTENT_ENCODING))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON in frame: {e}") from e
    return parse_message(obj)


def _encode_payload(message: Message) -> bytes:
    return json.dumps(dump_message(message), separators=(",", ":")).encode(CONTENT_ENCODING)


class FrameCodec(ABC):
    name = "abstract"

    def __init__(self, max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE) -> None:
        self._buffer = bytearray()
        self.max_message_size = max_message_size

    @abstractmethod
    def encode(self, message: Message) -> bytes: ...

    @abstractmethod
    def decode(self, buffer: bytes) -> Tuple[List[Message], int]:
        """Decode complete frames from the start of ``buffer``.

        Returns the decoded messages and the number of bytes consumed; bytes
        past that offset belong to an incomplete frame.
        """

    def feed(self, chunk: bytes) -> List[Message]:
        self._buffer += chunk
        messages, consumed = self.decode(bytes(self._buffer))
        del self._buffer[:consumed]
        return messages

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)


class NewlineCodec(FrameCodec):
    name = "newline"

    def encode(self, message: Message) -> bytes:
        return _encode_payload(message) + b"\n"

    def decode(self, buffer: bytes) -> Tuple[List[Message], int]:
        messages: List[Message] = []
        consumed = 0
        while True:
            end = buffer.find(b"\n", consumed)
            if end < 0:
                if len(buffer) - consumed > self.max_message_size:
                    logger.warning(
                        "Dropping %d bytes of unterminated line (limit %d)", len(buffer) - consumed, self.max_message_size
                    )
                    consumed = len(buffer)
                break
            line = buffer[consumed:end].strip()
            consumed = end + 1
            if not line:
                continue
            try:
                messages.append(_decode_payload(line))
            except ProtocolError as e:
                logger.warning("Dropping undecodable line (%d bytes): %s", len(line), e)
        return messages, consumed


def parse_header(header_bytes: bytes) -> Dict[str, str]:
    """Parse a header block (without the trailing blank line).

    Raises:
        ProtocolError: if the block is malformed or lacks a valid Content-Length.
    """
    if not header_bytes:
        raise ProtocolError("Empty header block")
    try:
        header_text = header_bytes.decode(HEADER_ENCODING)
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Header contains non-ASCII characters: {e}") from e

    headers: Dict[str, str] = {}
    for line in header_text.split("\r\n"):
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ProtocolError(f"Malformed header line: {line!r}")
        headers[name.strip().title()] = value.strip()

    if CONTENT_LENGTH not in headers:
        raise ProtocolError("Missing required Content-Length header")
    try:
        length = int(headers[CONTENT_LENGTH])
    except ValueError as e:
        raise ProtocolError(f"Invalid Content-Length value: {headers[CONTENT_LENGTH]!r}") from e
    if length < 0:
        raise ProtocolError(f"Negative Content-Length: {length}")
    return headers


class ContentLengthCodec(FrameCodec):
    name = "header"

    def encode(self, message: Message) -> bytes:
        body = _encode_payload(message)
        header = f"{CONTENT_LENGTH}: {len(body)}\r\n\r\n".encode(HEADER_ENCODING)
        return header + body

    def decode(self, buffer: bytes) -> Tuple[List[Message], int]:
        messages: List[Message] = []
        consumed = 0
        while True:
            # line breaks between frames are noise
            while buffer[consumed : consumed + 1] in (b"\r", b"\n"):
                consumed += 1
            separator = buffer.find(HEADER_SEPARATOR, consumed)
            if separator < 0:
                if len(buffer) - consumed > MAX_HEADER_SIZE:
                    logger.warning("Dropping %d bytes with no header terminator", len(buffer) - consumed)
                    consumed = len(buffer)
                break
            body_start = separator + len(HEADER_SEPARATOR)
            try:
                headers = parse_header(buffer[consumed:separator])
                length = int(headers[CONTENT_LENGTH])
                if length > self.max_message_size:
                    raise ProtocolError(f"Message size {length} exceeds maximum {self.max_message_size}")
            except ProtocolError as e:
                logger.warning("Dropping frame header: %s", e)
                consumed = body_start
                continue
            if len(buffer) - body_start < length:
                break
            body = buffer[body_start : body_start + length]
            consumed = body_start + length
            try:
                messages.append(_decode_payload(body))
            except ProtocolError as e:
                logger.warning("Dropping undecodable frame (%d bytes): %s", length, e)
        return messages, consumed


_CODECS = {
    "newline": NewlineCodec,
    "ndjson": NewlineCodec,
    "jsonl": NewlineCodec,
    "header": ContentLengthCodec,
    "content-length": ContentLengthCodec,
    "lsp": ContentLengthCodec,
}

FRAMINGS = tuple(_CODECS)


def codec_for(name: str) -> FrameCodec:
    try:
        return _CODECS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown framing {name!r}; expected one of {', '.join(FRAMINGS)}") from None
