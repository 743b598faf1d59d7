"""
Non-streaming response translation between Anthropic Messages and OpenAI
chat completions.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from cligate.models.provider import WireShape
from cligate.protocol.request_adapter import parse_tool_arguments
from cligate.routing.exceptions import TranslationError

ANTHROPIC_TO_OPENAI_FINISH = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

OPENAI_TO_ANTHROPIC_STOP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


def map_stop_reason(stop_reason: str | None) -> str | None:
    if stop_reason is None:
        return None
    return ANTHROPIC_TO_OPENAI_FINISH.get(stop_reason, "stop")


def map_finish_reason(finish_reason: str | None) -> str | None:
    if finish_reason is None:
        return None
    return OPENAI_TO_ANTHROPIC_STOP.get(finish_reason, "end_turn")


def openai_usage_to_anthropic(usage: Any) -> dict[str, Any] | None:
    if not isinstance(usage, dict):
        return None
    converted: dict[str, Any] = {
        "input_tokens": usage.get("prompt_tokens") or 0,
        "output_tokens": usage.get("completion_tokens") or 0,
    }
    details = usage.get("prompt_tokens_details")
    if isinstance(details, dict) and details.get("cached_tokens"):
        converted["cache_read_input_tokens"] = details["cached_tokens"]
    return converted


def anthropic_usage_to_openai(usage: Any) -> dict[str, Any] | None:
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens") or 0
    completion = usage.get("output_tokens") or 0
    converted: dict[str, Any] = {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": prompt + completion,
    }
    if usage.get("cache_read_input_tokens"):
        converted["prompt_tokens_details"] = {"cached_tokens": usage["cache_read_input_tokens"]}
    return converted


def openai_to_anthropic_response(payload: dict[str, Any]) -> dict[str, Any]:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise TranslationError("chat completion has no choices")
    # Only the first choice is kept.
    choice = choices[0]
    message = choice.get("message")
    if not isinstance(message, dict):
        raise TranslationError("chat completion choice has no message")

    content: list[dict[str, Any]] = []
    text = message.get("content")
    if isinstance(text, str) and text:
        content.append({"type": "text", "text": text})
    elif isinstance(text, list):
        for part in text:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                content.append({"type": "text", "text": part["text"]})
    for call in message.get("tool_calls") or []:
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        content.append(
            {
                "type": "tool_use",
                "id": call.get("id"),
                "name": function.get("name"),
                "input": parse_tool_arguments(function.get("arguments")),
            }
        )

    return {
        "id": payload.get("id") or f"msg_{uuid.uuid4().hex}",
        "type": "message",
        "role": message.get("role") or "assistant",
        "model": payload.get("model"),
        "content": content,
        "stop_reason": map_finish_reason(choice.get("finish_reason")),
        "stop_sequence": None,
        "usage": openai_usage_to_anthropic(payload.get("usage"))
        or {"input_tokens": 0, "output_tokens": 0},
    }


def anthropic_to_openai_response(payload: dict[str, Any]) -> dict[str, Any]:
    blocks = payload.get("content")
    if not isinstance(blocks, list):
        raise TranslationError("message response has no content list")

    texts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}, ensure_ascii=False),
                    },
                }
            )

    message: dict[str, Any] = {
        "role": payload.get("role") or "assistant",
        "content": "".join(texts) if texts or not tool_calls else None,
    }
    if tool_calls:
        message["tool_calls"] = tool_calls

    converted: dict[str, Any] = {
        "id": payload.get("id") or f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": 0,
        "model": payload.get("model"),
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": map_stop_reason(payload.get("stop_reason")),
            }
        ],
    }
    usage = anthropic_usage_to_openai(payload.get("usage"))
    if usage is not None:
        converted["usage"] = usage
    return converted


def adapt_response_payload(payload: Any, *, from_shape: WireShape, to_shape: WireShape) -> Any:
    """
    Convert an upstream response body from `from_shape` to the client's `to_shape`.
    """
    if from_shape == to_shape:
        return payload
    if not isinstance(payload, dict):
        raise TranslationError("upstream response body is not a JSON object")
    if from_shape == "openai":
        return openai_to_anthropic_response(payload)
    return anthropic_to_openai_response(payload)


__all__ = [
    "adapt_response_payload",
    "anthropic_to_openai_response",
    "anthropic_usage_to_openai",
    "map_finish_reason",
    "map_stop_reason",
    "openai_to_anthropic_response",
    "openai_usage_to_anthropic",
]
