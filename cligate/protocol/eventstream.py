"""
Decoder for the AWS event-stream framing used by Bedrock's
invoke-with-response-stream.

Frame layout (big endian):

    total_length:u32 headers_length:u32 prelude_crc:u32
    headers[headers_length] payload[...] message_crc:u32

Each `chunk` event carries `{"bytes": "<base64>"}` whose decoded value is
one Anthropic stream event; it is re-emitted as Anthropic SSE so the rest
of the pipeline treats Bedrock like a native Anthropic upstream.
"""

from __future__ import annotations

import base64
import binascii
import json
import struct
import zlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from cligate.protocol.stream_adapter import anthropic_error_event, encode_anthropic_event
from cligate.routing.exceptions import TranslationError

_PRELUDE_LENGTH = 12
_MESSAGE_CRC_LENGTH = 4
_MIN_FRAME_LENGTH = _PRELUDE_LENGTH + _MESSAGE_CRC_LENGTH

# Header value type tag -> fixed byte width (None: u16 length-prefixed).
_HEADER_WIDTHS: dict[int, int | None] = {
    0: 0,  # bool true
    1: 0,  # bool false
    2: 1,  # byte
    3: 2,  # short
    4: 4,  # int
    5: 8,  # long
    6: None,  # byte array
    7: None,  # string
    8: 8,  # timestamp
    9: 16,  # uuid
}


@dataclass
class EventStreamMessage:
    headers: dict[str, Any] = field(default_factory=dict)
    payload: bytes = b""

    @property
    def message_type(self) -> str | None:
        return self.headers.get(":message-type")

    @property
    def event_type(self) -> str | None:
        return self.headers.get(":event-type") or self.headers.get(":exception-type")


def _decode_header_value(type_tag: int, raw: bytes) -> Any:
    if type_tag == 0:
        return True
    if type_tag == 1:
        return False
    if type_tag == 7:
        return raw.decode("utf-8", errors="replace")
    if type_tag in (2, 3, 4, 5, 8):
        return int.from_bytes(raw, "big", signed=True)
    return raw


def _decode_headers(data: bytes) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    offset = 0
    while offset < len(data):
        name_length = data[offset]
        offset += 1
        name = data[offset : offset + name_length].decode("utf-8", errors="replace")
        offset += name_length
        type_tag = data[offset]
        offset += 1
        if type_tag not in _HEADER_WIDTHS:
            raise TranslationError(f"event-stream header {name!r} has unknown type {type_tag}")
        width = _HEADER_WIDTHS[type_tag]
        if width is None:
            (width,) = struct.unpack_from(">H", data, offset)
            offset += 2
        headers[name] = _decode_header_value(type_tag, data[offset : offset + width])
        offset += width
    return headers


class EventStreamDecoder:
    """Incremental frame decoder; feed bytes, get complete messages back."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[EventStreamMessage]:
        self._buffer.extend(chunk)
        messages: list[EventStreamMessage] = []
        while len(self._buffer) >= _PRELUDE_LENGTH:
            total_length, headers_length, prelude_crc = struct.unpack_from(">III", self._buffer, 0)
            if zlib.crc32(bytes(self._buffer[:8])) != prelude_crc:
                raise TranslationError("event-stream prelude checksum mismatch")
            if total_length < _MIN_FRAME_LENGTH + headers_length:
                raise TranslationError("event-stream frame length is invalid")
            if len(self._buffer) < total_length:
                break

            frame = bytes(self._buffer[:total_length])
            del self._buffer[:total_length]
            (message_crc,) = struct.unpack_from(">I", frame, total_length - _MESSAGE_CRC_LENGTH)
            if zlib.crc32(frame[: total_length - _MESSAGE_CRC_LENGTH]) != message_crc:
                raise TranslationError("event-stream message checksum mismatch")

            headers_end = _PRELUDE_LENGTH + headers_length
            messages.append(
                EventStreamMessage(
                    headers=_decode_headers(frame[_PRELUDE_LENGTH:headers_end]),
                    payload=frame[headers_end : total_length - _MESSAGE_CRC_LENGTH],
                )
            )
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


def _message_to_sse(message: EventStreamMessage) -> bytes | None:
    try:
        body = json.loads(message.payload or b"{}")
    except json.JSONDecodeError as exc:
        raise TranslationError(f"event-stream payload is not JSON: {exc}") from exc

    if message.message_type in ("exception", "error"):
        err_type = message.event_type or "api_error"
        err_message = body.get("message") if isinstance(body, dict) else None
        return anthropic_error_event(err_type, err_message or json.dumps(body))

    if message.event_type != "chunk" or not isinstance(body, dict) or "bytes" not in body:
        return None
    try:
        event = json.loads(base64.b64decode(body["bytes"]))
    except (binascii.Error, ValueError) as exc:
        raise TranslationError(f"event-stream chunk is not a base64 JSON event: {exc}") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        return None
    # Bedrock appends its own invocation metrics to message_stop.
    event.pop("amazon-bedrock-invocationMetrics", None)
    return encode_anthropic_event(event["type"], event)


async def eventstream_to_anthropic_sse(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    decoder = EventStreamDecoder()
    async for chunk in chunks:
        for message in decoder.feed(chunk):
            sse = _message_to_sse(message)
            if sse is not None:
                yield sse


def encode_eventstream_message(headers: dict[str, str], payload: bytes) -> bytes:
    """Encode one frame with string headers; the inverse of EventStreamDecoder."""
    header_bytes = bytearray()
    for name, value in headers.items():
        name_raw = name.encode("utf-8")
        value_raw = value.encode("utf-8")
        header_bytes.append(len(name_raw))
        header_bytes.extend(name_raw)
        header_bytes.append(7)
        header_bytes.extend(struct.pack(">H", len(value_raw)))
        header_bytes.extend(value_raw)

    total_length = _MIN_FRAME_LENGTH + len(header_bytes) + len(payload)
    prelude = struct.pack(">II", total_length, len(header_bytes))
    prelude += struct.pack(">I", zlib.crc32(prelude))
    message = prelude + bytes(header_bytes) + payload
    return message + struct.pack(">I", zlib.crc32(message))


def encode_bedrock_chunk(event: dict[str, Any]) -> bytes:
    """Wrap one Anthropic stream event the way Bedrock delivers it."""
    payload = json.dumps(
        {"bytes": base64.b64encode(json.dumps(event).encode()).decode()}
    ).encode()
    return encode_eventstream_message(
        {":event-type": "chunk", ":content-type": "application/json", ":message-type": "event"},
        payload,
    )


__all__ = [
    "EventStreamDecoder",
    "EventStreamMessage",
    "encode_bedrock_chunk",
    "encode_eventstream_message",
    "eventstream_to_anthropic_sse",
]
