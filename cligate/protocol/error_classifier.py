"""
Upstream error body classification.

Separates "this request is invalid" from "this provider cannot serve this
kind of request" (tools, vision, extended thinking). The latter is failed
over to the next candidate like a translation failure.
"""

from __future__ import annotations

import json
from typing import Any


_UNSUPPORTED_MARKERS = (
    "does not support",
    "do not support",
    "not support",
    "unsupported",
    "not enabled",
    "not available",
)

_CAPABILITY_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("tools", ("tool", "tool_calls", "function")),
    ("vision", ("vision", "image", "image_url", "multimodal")),
    ("thinking", ("thinking", "reasoning")),
)


def _extract_message_from_json(obj: Any) -> str | None:
    if isinstance(obj, dict):
        # OpenAI {"error": {"message": ...}} and Anthropic {"type":"error","error":{...}}
        if isinstance(obj.get("error"), dict):
            msg = obj["error"].get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = obj.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
        detail = obj.get("detail")
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
    return None


def extract_error_message(error_text: str | None) -> str:
    if not error_text:
        return ""
    text = str(error_text)
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return _extract_message_from_json(parsed) or text


def classify_capability_mismatch(status_code: int | None, error_text: str | None) -> str | None:
    """
    Return the unsupported capability (tools/vision/thinking) or None.

    Only 400/422 bodies are inspected; 429/5xx already fail over through
    the retryable status set.
    """
    if status_code not in (400, 422):
        return None

    msg = extract_error_message(error_text).lower()
    if not msg or not any(marker in msg for marker in _UNSUPPORTED_MARKERS):
        return None

    for capability, hints in _CAPABILITY_HINTS:
        if any(hint in msg for hint in hints):
            return capability
    return None


__all__ = ["classify_capability_mismatch", "extract_error_message"]
