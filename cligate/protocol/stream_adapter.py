"""
Streaming translation between Anthropic Messages SSE and OpenAI chat
completion chunks.

Adapters are fed upstream bytes as they arrive and return the client
bytes produced by each complete SSE event, so output order follows
upstream order and nothing is held back beyond one event boundary.
"""

from __future__ import annotations

import codecs
import json
import uuid
from collections.abc import AsyncIterator
from typing import Any

from cligate.models.provider import WireShape
from cligate.protocol.response_adapter import map_finish_reason, map_stop_reason


class SseBuffer:
    """Incremental SSE parser yielding (event name, data) per complete event."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[tuple[str | None, str]]:
        self._buffer = (self._buffer + self._decoder.decode(chunk)).replace("\r\n", "\n")
        events: list[tuple[str | None, str]] = []
        while "\n\n" in self._buffer:
            raw_event, self._buffer = self._buffer.split("\n\n", 1)
            event_type: str | None = None
            data_lines: list[str] = []
            for line in raw_event.splitlines():
                if line.startswith("event:"):
                    event_type = line[len("event:") :].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[len("data:") :].removeprefix(" "))
            if data_lines:
                events.append((event_type, "\n".join(data_lines)))
        return events


def _error_message(err: Any, default: str = "Upstream streaming error") -> tuple[str, str]:
    if isinstance(err, dict):
        message = err.get("message")
        err_type = err.get("type") or "api_error"
        if isinstance(message, str) and message.strip():
            return str(err_type), message.strip()
        return str(err_type), json.dumps(err, ensure_ascii=False)
    if isinstance(err, str) and err.strip():
        return "api_error", err.strip()
    return "api_error", default


def encode_anthropic_event(event: str, payload: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def encode_openai_chunk(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


OPENAI_DONE = b"data: [DONE]\n\n"


def anthropic_error_event(err_type: str, message: str) -> bytes:
    return encode_anthropic_event(
        "error", {"type": "error", "error": {"type": err_type, "message": message}}
    )


def openai_error_chunk(err_type: str, message: str) -> bytes:
    return encode_openai_chunk({"error": {"type": err_type, "message": message}})


class OpenAIToAnthropicStreamAdapter:
    """
    Turn OpenAI chat completion chunks into Anthropic message events.

    Text deltas and each tool call get their own content block; tool call
    arguments are forwarded as input_json_delta fragments.
    """

    def __init__(self, model: str | None) -> None:
        self.model = model
        self.message_id = f"msg_{uuid.uuid4().hex}"
        self._sse = SseBuffer()
        self.started = False
        self.block_index = -1
        self.block_kind: str | None = None
        self.tool_blocks: dict[int, int] = {}
        self.stop_reason: str | None = None
        self.usage: dict[str, int] = {}
        self.saw_done = False
        self.had_error = False

    def _ensure_started(self, data: dict[str, Any]) -> list[bytes]:
        if self.started:
            return []
        self.started = True
        if isinstance(data.get("id"), str) and data["id"]:
            self.message_id = data["id"]
        self.model = data.get("model") or self.model
        return [
            encode_anthropic_event(
                "message_start",
                {
                    "type": "message_start",
                    "message": {
                        "id": self.message_id,
                        "type": "message",
                        "role": "assistant",
                        "model": self.model,
                        "content": [],
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                },
            )
        ]

    def _close_block(self) -> list[bytes]:
        if self.block_kind is None:
            return []
        self.block_kind = None
        return [
            encode_anthropic_event(
                "content_block_stop", {"type": "content_block_stop", "index": self.block_index}
            )
        ]

    def _open_block(self, kind: str, content_block: dict[str, Any]) -> list[bytes]:
        outputs = self._close_block()
        self.block_index += 1
        self.block_kind = kind
        outputs.append(
            encode_anthropic_event(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": self.block_index,
                    "content_block": content_block,
                },
            )
        )
        return outputs

    def _delta(self, index: int, delta: dict[str, Any]) -> bytes:
        return encode_anthropic_event(
            "content_block_delta", {"type": "content_block_delta", "index": index, "delta": delta}
        )

    def _handle_choice(self, choice: dict[str, Any]) -> list[bytes]:
        outputs: list[bytes] = []
        delta = choice.get("delta") or {}
        text = delta.get("content")
        if isinstance(text, str) and text:
            if self.block_kind != "text":
                outputs.extend(self._open_block("text", {"type": "text", "text": ""}))
            outputs.append(self._delta(self.block_index, {"type": "text_delta", "text": text}))

        for call in delta.get("tool_calls") or []:
            if not isinstance(call, dict):
                continue
            call_index = call.get("index", len(self.tool_blocks))
            function = call.get("function") or {}
            if call_index not in self.tool_blocks:
                outputs.extend(
                    self._open_block(
                        "tool_use",
                        {
                            "type": "tool_use",
                            "id": call.get("id") or f"toolu_{uuid.uuid4().hex}",
                            "name": function.get("name") or "",
                            "input": {},
                        },
                    )
                )
                self.tool_blocks[call_index] = self.block_index
            arguments = function.get("arguments")
            if isinstance(arguments, str) and arguments:
                outputs.append(
                    self._delta(
                        self.tool_blocks[call_index],
                        {"type": "input_json_delta", "partial_json": arguments},
                    )
                )

        finish_reason = choice.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason:
            self.stop_reason = map_finish_reason(finish_reason)
        return outputs

    def process_chunk(self, chunk: bytes) -> list[bytes]:
        outputs: list[bytes] = []
        if self.had_error:
            return outputs
        for _event, data_str in self._sse.feed(chunk):
            if data_str == "[DONE]":
                self.saw_done = True
                continue
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict):
                continue

            if data.get("error"):
                err_type, message = _error_message(data["error"])
                outputs.append(anthropic_error_event(err_type, message))
                self.had_error = True
                return outputs

            outputs.extend(self._ensure_started(data))
            usage = data.get("usage")
            if isinstance(usage, dict):
                self.usage = {
                    "input_tokens": usage.get("prompt_tokens") or 0,
                    "output_tokens": usage.get("completion_tokens") or 0,
                }
            choices = data.get("choices")
            if isinstance(choices, list) and choices and isinstance(choices[0], dict):
                outputs.extend(self._handle_choice(choices[0]))
        return outputs

    def finalize(self) -> list[bytes]:
        # A stream cut before its terminal marker is passed through truncated.
        if self.had_error or not (self.saw_done or self.stop_reason):
            return []
        outputs = self._ensure_started({})
        outputs.extend(self._close_block())
        outputs.append(
            encode_anthropic_event(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": self.stop_reason or "end_turn", "stop_sequence": None},
                    "usage": self.usage or {"output_tokens": 0},
                },
            )
        )
        outputs.append(encode_anthropic_event("message_stop", {"type": "message_stop"}))
        return outputs


class AnthropicToOpenAIStreamAdapter:
    """
    Turn Anthropic message events into OpenAI chat.completion.chunk frames.

    The assistant role is sent once, text and tool argument deltas follow in
    upstream order, then a finish chunk, a usage chunk and `[DONE]`.
    """

    def __init__(self, model: str | None) -> None:
        self.model = model
        self.completion_id = f"chatcmpl-{uuid.uuid4().hex}"
        self._sse = SseBuffer()
        self.sent_role = False
        self.tool_index_by_block: dict[int, int] = {}
        self.finish_reason: str | None = None
        self.usage: dict[str, int] = {}
        self.finished = False
        self.had_error = False

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        return encode_openai_chunk(
            {
                "id": self.completion_id,
                "object": "chat.completion.chunk",
                "created": 0,
                "model": self.model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
        )

    def _emit_role_once(self) -> list[bytes]:
        if self.sent_role:
            return []
        self.sent_role = True
        return [self._chunk({"role": "assistant", "content": ""})]

    def _finish(self) -> list[bytes]:
        self.finished = True
        outputs = self._emit_role_once()
        outputs.append(self._chunk({}, self.finish_reason or "stop"))
        if self.usage:
            prompt = self.usage.get("input_tokens", 0)
            completion = self.usage.get("output_tokens", 0)
            outputs.append(
                encode_openai_chunk(
                    {
                        "id": self.completion_id,
                        "object": "chat.completion.chunk",
                        "created": 0,
                        "model": self.model,
                        "choices": [],
                        "usage": {
                            "prompt_tokens": prompt,
                            "completion_tokens": completion,
                            "total_tokens": prompt + completion,
                        },
                    }
                )
            )
        outputs.append(OPENAI_DONE)
        return outputs

    def _handle_event(self, event_type: str | None, data: dict[str, Any]) -> list[bytes]:
        outputs: list[bytes] = []
        if event_type == "message_start":
            message = data.get("message") or {}
            if isinstance(message.get("id"), str) and message["id"]:
                self.completion_id = message["id"]
            self.model = message.get("model") or self.model
            usage = message.get("usage")
            if isinstance(usage, dict) and usage.get("input_tokens") is not None:
                self.usage["input_tokens"] = usage["input_tokens"]
            outputs.extend(self._emit_role_once())

        elif event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                outputs.extend(self._emit_role_once())
                tool_index = len(self.tool_index_by_block)
                self.tool_index_by_block[data.get("index", tool_index)] = tool_index
                outputs.append(
                    self._chunk(
                        {
                            "tool_calls": [
                                {
                                    "index": tool_index,
                                    "id": block.get("id"),
                                    "type": "function",
                                    "function": {"name": block.get("name"), "arguments": ""},
                                }
                            ]
                        }
                    )
                )

        elif event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                outputs.extend(self._emit_role_once())
                outputs.append(self._chunk({"content": delta["text"]}))
            elif delta.get("type") == "input_json_delta":
                tool_index = self.tool_index_by_block.get(data.get("index"))
                partial = delta.get("partial_json")
                if tool_index is not None and isinstance(partial, str) and partial:
                    outputs.append(
                        self._chunk(
                            {"tool_calls": [{"index": tool_index, "function": {"arguments": partial}}]}
                        )
                    )

        elif event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = map_stop_reason(delta["stop_reason"])
            usage = data.get("usage")
            if isinstance(usage, dict):
                for key in ("input_tokens", "output_tokens"):
                    if usage.get(key) is not None:
                        self.usage[key] = usage[key]

        elif event_type == "message_stop":
            outputs.extend(self._finish())

        elif event_type == "error":
            err_type, message = _error_message(data.get("error"))
            outputs.append(openai_error_chunk(err_type, message))
            outputs.append(OPENAI_DONE)
            self.had_error = True
        return outputs

    def process_chunk(self, chunk: bytes) -> list[bytes]:
        outputs: list[bytes] = []
        if self.had_error or self.finished:
            return outputs
        for event_type, data_str in self._sse.feed(chunk):
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict):
                continue
            outputs.extend(self._handle_event(event_type or data.get("type"), data))
            if self.had_error or self.finished:
                break
        return outputs

    def finalize(self) -> list[bytes]:
        if self.had_error or self.finished or self.finish_reason is None:
            return []
        return self._finish()


async def adapt_stream(
    chunks: AsyncIterator[bytes],
    *,
    from_shape: WireShape,
    to_shape: WireShape,
    request_model: str | None,
) -> AsyncIterator[bytes]:
    if from_shape == to_shape:
        async for chunk in chunks:
            yield chunk
        return

    adapter: OpenAIToAnthropicStreamAdapter | AnthropicToOpenAIStreamAdapter
    if from_shape == "openai":
        adapter = OpenAIToAnthropicStreamAdapter(request_model)
    else:
        adapter = AnthropicToOpenAIStreamAdapter(request_model)

    async for chunk in chunks:
        for out in adapter.process_chunk(chunk):
            yield out
    for out in adapter.finalize():
        yield out


__all__ = [
    "AnthropicToOpenAIStreamAdapter",
    "OPENAI_DONE",
    "OpenAIToAnthropicStreamAdapter",
    "SseBuffer",
    "adapt_stream",
    "anthropic_error_event",
    "encode_anthropic_event",
    "encode_openai_chunk",
    "openai_error_chunk",
]
