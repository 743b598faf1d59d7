"""
Scenario classification of decoded CLI requests.

Checks run in a fixed priority order and the first match wins:
think > image > longContext > webSearch > background. Both Anthropic
Messages and OpenAI chat request shapes are understood, so the same
profile behaves identically whichever CLI family sends the request.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from cligate.logging_config import logger
from cligate.models.profile import Profile, Scenario

_IMAGE_BLOCK_TYPES = frozenset({"image", "image_url", "input_image", "document"})
_INACTIVE_REASONING_EFFORTS = frozenset({"", "none", "minimal"})

# Characters per estimated token.
_CHARS_PER_TOKEN = 4


def _messages(request: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    messages = request.get("messages")
    if not isinstance(messages, list):
        return []
    return [m for m in messages if isinstance(m, Mapping)]


def _content_blocks(message: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, Mapping)]


def thinking_requested(request: Mapping[str, Any]) -> bool:
    """True when the request enables extended reasoning in either wire shape."""
    thinking = request.get("thinking")
    if isinstance(thinking, Mapping) and thinking.get("type") == "enabled":
        return True

    effort = request.get("reasoning_effort")
    if isinstance(effort, str) and effort.strip().lower() not in _INACTIVE_REASONING_EFFORTS:
        return True

    reasoning = request.get("reasoning")
    if isinstance(reasoning, Mapping):
        effort = reasoning.get("effort")
        if isinstance(effort, str) and effort.strip().lower() not in _INACTIVE_REASONING_EFFORTS:
            return True
    return False


def _has_image(request: Mapping[str, Any]) -> bool:
    for message in _messages(request):
        for block in _content_blocks(message):
            if block.get("type") in _IMAGE_BLOCK_TYPES:
                return True
            # Anthropic tool results may nest image blocks.
            if block.get("type") == "tool_result" and isinstance(block.get("content"), list):
                for inner in block["content"]:
                    if isinstance(inner, Mapping) and inner.get("type") in _IMAGE_BLOCK_TYPES:
                        return True
    return False


def _text_fragments(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
        return
    if isinstance(value, list):
        for item in value:
            yield from _text_fragments(item)
        return
    if not isinstance(value, Mapping):
        return

    block_type = value.get("type")
    if isinstance(value.get("text"), str):
        yield value["text"]
    if isinstance(value.get("thinking"), str):
        yield value["thinking"]
    if block_type == "tool_use" and value.get("input") is not None:
        yield json.dumps(value["input"], ensure_ascii=False)
    if block_type == "tool_result":
        yield from _text_fragments(value.get("content"))


def estimate_tokens(request: Mapping[str, Any]) -> int:
    """
    Rough input size: ceil(characters / 4) over the system prompt, message
    text, tool-call inputs/arguments and tool results.
    """
    chars = sum(len(s) for s in _text_fragments(request.get("system")))
    for message in _messages(request):
        chars += sum(len(s) for s in _text_fragments(message.get("content")))
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            for call in tool_calls:
                function = call.get("function") if isinstance(call, Mapping) else None
                if isinstance(function, Mapping) and isinstance(function.get("arguments"), str):
                    chars += len(function["arguments"])
    return math.ceil(chars / _CHARS_PER_TOKEN)


def _is_long_context(profile: Profile, request: Mapping[str, Any]) -> bool:
    threshold = profile.long_context_threshold
    if not threshold:
        return False
    return estimate_tokens(request) > threshold


def _is_web_search_tool(tool: Mapping[str, Any]) -> bool:
    tool_type = tool.get("type")
    if isinstance(tool_type, str) and tool_type.startswith("web_search"):
        return True
    if tool.get("name") == "web_search":
        return True
    function = tool.get("function")
    return isinstance(function, Mapping) and function.get("name") == "web_search"


def _has_web_search(request: Mapping[str, Any]) -> bool:
    if isinstance(request.get("web_search_options"), Mapping):
        return True
    tools = request.get("tools")
    if not isinstance(tools, list):
        return False
    return any(isinstance(t, Mapping) and _is_web_search_tool(t) for t in tools)


def _is_background(profile: Profile, request: Mapping[str, Any]) -> bool:
    model = request.get("model")
    if not isinstance(model, str) or not model:
        return False
    return re.search(profile.background_model_pattern, model, re.IGNORECASE) is not None


_CHECKS: tuple[tuple[Scenario, Callable[[Profile, Mapping[str, Any]], bool]], ...] = (
    (Scenario.THINK, lambda _profile, request: thinking_requested(request)),
    (Scenario.IMAGE, lambda _profile, request: _has_image(request)),
    (Scenario.LONG_CONTEXT, _is_long_context),
    (Scenario.WEB_SEARCH, lambda _profile, request: _has_web_search(request)),
    (Scenario.BACKGROUND, _is_background),
)


def classify(profile: Profile, request: Any) -> Scenario | None:
    """
    Return the scenario of a decoded request, or None.

    Pure and total: anything that is not a JSON object classifies as None,
    and a check that trips over an unexpected shape is treated as a miss.
    """
    if not isinstance(request, Mapping):
        return None
    for scenario, check in _CHECKS:
        try:
            matched = check(profile, request)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.debug("routing: %s check skipped on malformed request: %s", scenario.value, exc)
            continue
        if matched:
            return scenario
    return None


__all__ = ["classify", "estimate_tokens", "thinking_requested"]
