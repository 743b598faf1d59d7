"""
Request translation between Anthropic Messages and OpenAI chat completions.

Fields both schemas share are mapped one to one. Fields only one side
understands are dropped or defaulted according to a fixed table:

- Anthropic-only, dropped: thinking / redacted_thinking / document blocks,
  top_k, thinking, metadata (user_id becomes `user`), server tools.
- OpenAI-only, dropped: n, penalties, logprobs, seed, response_format,
  stream_options, reasoning_effort, file / audio content parts.
"""

from __future__ import annotations

import json
from typing import Any

from cligate.logging_config import logger
from cligate.models.provider import WireShape
from cligate.routing.exceptions import TranslationError

_OPENAI_ONLY_DROPPED = (
    "n",
    "presence_penalty",
    "frequency_penalty",
    "logprobs",
    "top_logprobs",
    "seed",
    "response_format",
    "stream_options",
    "reasoning_effort",
)


def _require_messages(payload: dict[str, Any]) -> list[dict[str, Any]]:
    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise TranslationError("request has no 'messages' list")
    for msg in messages:
        if not isinstance(msg, dict):
            raise TranslationError("every message must be a JSON object")
    return messages


def _joined_text(content: Any) -> str:
    """Join the text of a string or a list of text blocks/parts with newlines."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    return ""


# ---------------------------------------------------------------------------
# Anthropic -> OpenAI
# ---------------------------------------------------------------------------


def _anthropic_image_to_part(block: dict[str, Any]) -> dict[str, Any] | None:
    source = block.get("source")
    if not isinstance(source, dict):
        return None
    if source.get("type") == "base64":
        url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
    elif source.get("type") == "url" and isinstance(source.get("url"), str):
        url = source["url"]
    else:
        return None
    return {"type": "image_url", "image_url": {"url": url}}


def _anthropic_message_to_openai(msg: dict[str, Any]) -> list[dict[str, Any]]:
    role = msg.get("role") or "user"
    content = msg.get("content")
    if isinstance(content, str):
        return [{"role": role, "content": content}]
    if not isinstance(content, list):
        raise TranslationError(f"unsupported content in {role} message")

    parts: list[dict[str, Any]] = []
    tool_calls: list[dict[str, Any]] = []
    tool_results: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
        elif block_type == "image":
            part = _anthropic_image_to_part(block)
            if part is not None:
                parts.append(part)
        elif block_type == "tool_use":
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
        elif block_type == "tool_result":
            tool_results.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id"),
                    "content": _joined_text(block.get("content")),
                }
            )
        else:
            logger.debug("translate: dropping %s block", block_type)

    out: list[dict[str, Any]] = list(tool_results)
    if role == "assistant":
        if parts or tool_calls:
            text = _joined_text(parts)
            message: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                message["tool_calls"] = tool_calls
            out.append(message)
    elif parts:
        out.append({"role": role, "content": parts})
    return out


def _anthropic_tools_to_openai(tools: Any) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if not isinstance(tools, list):
        return converted
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        # Typed tools (web_search_*, bash_*, ...) run on Anthropic's side only.
        if tool.get("type") not in (None, "custom"):
            continue
        function: dict[str, Any] = {
            "name": tool.get("name"),
            "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
        }
        if tool.get("description"):
            function["description"] = tool["description"]
        converted.append({"type": "function", "function": function})
    return converted


def _anthropic_tool_choice_to_openai(choice: Any) -> Any:
    if not isinstance(choice, dict):
        return None
    kind = choice.get("type")
    if kind == "auto":
        return "auto"
    if kind == "any":
        return "required"
    if kind == "none":
        return "none"
    if kind == "tool":
        return {"type": "function", "function": {"name": choice.get("name")}}
    return None


def anthropic_to_openai_request(payload: dict[str, Any], *, upstream_model: str | None) -> dict[str, Any]:
    messages: list[dict[str, Any]] = []
    system_text = _joined_text(payload.get("system"))
    if system_text:
        messages.append({"role": "system", "content": system_text})
    for msg in _require_messages(payload):
        messages.extend(_anthropic_message_to_openai(msg))

    converted: dict[str, Any] = {
        "model": upstream_model or payload.get("model"),
        "messages": messages,
    }
    if payload.get("max_tokens") is not None:
        converted["max_completion_tokens"] = payload["max_tokens"]
    if payload.get("stop_sequences"):
        converted["stop"] = payload["stop_sequences"]
    for key in ("temperature", "top_p"):
        if payload.get(key) is not None:
            converted[key] = payload[key]
    if payload.get("stream") is True:
        converted["stream"] = True
        converted["stream_options"] = {"include_usage": True}

    metadata = payload.get("metadata")
    if isinstance(metadata, dict) and metadata.get("user_id"):
        converted["user"] = str(metadata["user_id"])

    tools = _anthropic_tools_to_openai(payload.get("tools"))
    if tools:
        converted["tools"] = tools
        tool_choice = _anthropic_tool_choice_to_openai(payload.get("tool_choice"))
        if tool_choice is not None:
            converted["tool_choice"] = tool_choice
        if isinstance(payload.get("tool_choice"), dict) and payload["tool_choice"].get(
            "disable_parallel_tool_use"
        ):
            converted["parallel_tool_calls"] = False
    return converted


# ---------------------------------------------------------------------------
# OpenAI -> Anthropic
# ---------------------------------------------------------------------------


def _data_url_to_source(url: str) -> dict[str, Any]:
    if url.startswith("data:") and ";base64," in url:
        header, data = url[len("data:") :].split(";base64,", 1)
        return {"type": "base64", "media_type": header or "image/png", "data": data}
    return {"type": "url", "url": url}


def _openai_content_to_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    blocks: list[dict[str, Any]] = []
    if not isinstance(content, list):
        return blocks
    for part in content:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text" and isinstance(part.get("text"), str):
            blocks.append({"type": "text", "text": part["text"]})
        elif part_type == "image_url":
            image_url = part.get("image_url")
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            if isinstance(url, str):
                blocks.append({"type": "image", "source": _data_url_to_source(url)})
        else:
            logger.debug("translate: dropping %s content part", part_type)
    return blocks


def parse_tool_arguments(arguments: Any) -> Any:
    if isinstance(arguments, dict):
        return arguments
    if arguments in (None, ""):
        return {}
    try:
        return json.loads(arguments)
    except (TypeError, ValueError) as exc:
        raise TranslationError(f"tool call arguments are not valid JSON: {exc}") from exc


def _openai_tool_calls_to_blocks(tool_calls: Any) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    if not isinstance(tool_calls, list):
        return blocks
    for call in tool_calls:
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        blocks.append(
            {
                "type": "tool_use",
                "id": call.get("id"),
                "name": function.get("name"),
                "input": parse_tool_arguments(function.get("arguments")),
            }
        )
    return blocks


def _openai_tools_to_anthropic(tools: Any) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if not isinstance(tools, list):
        return converted
    for tool in tools:
        if not isinstance(tool, dict) or tool.get("type") != "function":
            continue
        fn = tool.get("function")
        if not isinstance(fn, dict) or not fn.get("name"):
            continue
        entry: dict[str, Any] = {
            "name": fn["name"],
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        }
        if fn.get("description"):
            entry["description"] = fn["description"]
        converted.append(entry)
    return converted


def _openai_tool_choice_to_anthropic(choice: Any) -> dict[str, Any] | None:
    if choice == "auto":
        return {"type": "auto"}
    if choice == "required":
        return {"type": "any"}
    if choice == "none":
        return {"type": "none"}
    if isinstance(choice, dict):
        fn = choice.get("function")
        if isinstance(fn, dict) and fn.get("name"):
            return {"type": "tool", "name": fn["name"]}
    return None


def openai_to_anthropic_request(
    payload: dict[str, Any],
    *,
    upstream_model: str | None,
    default_max_tokens: int,
) -> dict[str, Any]:
    system_texts: list[str] = []
    messages: list[dict[str, Any]] = []
    # Consecutive tool messages become one user message of tool_result blocks.
    pending_results: list[dict[str, Any]] | None = None

    for msg in _require_messages(payload):
        role = msg.get("role") or "user"
        content = msg.get("content")
        if role in ("system", "developer"):
            text = _joined_text(content)
            if text:
                system_texts.append(text)
            continue

        if role == "tool":
            result = {
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id"),
                "content": _joined_text(content),
            }
            if pending_results is None:
                pending_results = [result]
                messages.append({"role": "user", "content": pending_results})
            else:
                pending_results.append(result)
            continue
        pending_results = None

        if role == "assistant":
            tool_blocks = _openai_tool_calls_to_blocks(msg.get("tool_calls"))
            if not tool_blocks and isinstance(content, str):
                messages.append({"role": "assistant", "content": content})
                continue
            blocks = _openai_content_to_blocks(content) + tool_blocks
            if blocks:
                messages.append({"role": "assistant", "content": blocks})
            continue

        if isinstance(content, str):
            messages.append({"role": role, "content": content})
        else:
            messages.append({"role": role, "content": _openai_content_to_blocks(content)})

    converted: dict[str, Any] = {
        "model": upstream_model or payload.get("model"),
        "messages": messages,
    }
    if system_texts:
        converted["system"] = "\n".join(system_texts)

    max_tokens = payload.get("max_completion_tokens")
    if max_tokens is None:
        max_tokens = payload.get("max_tokens")
    converted["max_tokens"] = max_tokens if max_tokens is not None else default_max_tokens

    stop = payload.get("stop")
    if isinstance(stop, str):
        converted["stop_sequences"] = [stop]
    elif isinstance(stop, list) and stop:
        converted["stop_sequences"] = stop
    for key in ("temperature", "top_p"):
        if payload.get(key) is not None:
            converted[key] = payload[key]
    if payload.get("stream") is True:
        converted["stream"] = True
    if payload.get("user"):
        converted["metadata"] = {"user_id": str(payload["user"])}

    tools = _openai_tools_to_anthropic(payload.get("tools"))
    if tools:
        converted["tools"] = tools
        tool_choice = _openai_tool_choice_to_anthropic(payload.get("tool_choice"))
        if payload.get("parallel_tool_calls") is False:
            tool_choice = dict(tool_choice or {"type": "auto"})
            tool_choice["disable_parallel_tool_use"] = True
        if tool_choice is not None:
            converted["tool_choice"] = tool_choice

    dropped = [key for key in _OPENAI_ONLY_DROPPED if key in payload]
    if dropped:
        logger.debug("translate: dropping OpenAI-only fields %s", dropped)
    return converted


def adapt_request_payload(
    payload: dict[str, Any],
    *,
    from_shape: WireShape,
    to_shape: WireShape,
    upstream_model: str | None,
    default_max_tokens: int,
) -> dict[str, Any]:
    """
    Convert a client request body from `from_shape` to `to_shape`.

    Same-shape requests are copied untouched apart from the model name.
    """
    if not isinstance(payload, dict):
        raise TranslationError("request body must be a JSON object")

    if from_shape == to_shape:
        copied = dict(payload)
        if upstream_model:
            copied["model"] = upstream_model
        return copied

    if from_shape == "anthropic":
        return anthropic_to_openai_request(payload, upstream_model=upstream_model)
    return openai_to_anthropic_request(
        payload, upstream_model=upstream_model, default_max_tokens=default_max_tokens
    )


__all__ = [
    "adapt_request_payload",
    "anthropic_to_openai_request",
    "openai_to_anthropic_request",
    "parse_tool_arguments",
]
