from __future__ import annotations

import pytest

from cligate.protocol.request_adapter import (
    adapt_request_payload,
    anthropic_to_openai_request,
    openai_to_anthropic_request,
)
from cligate.protocol.response_adapter import (
    adapt_response_payload,
    anthropic_to_openai_response,
    map_finish_reason,
    map_stop_reason,
    openai_to_anthropic_response,
)
from cligate.routing.exceptions import TranslationError


def _anthropic_request() -> dict:
    return {
        "model": "claude-sonnet-4-5",
        "system": [{"type": "text", "text": "be brief"}, {"type": "text", "text": "be kind"}],
        "max_tokens": 1024,
        "temperature": 0.2,
        "stop_sequences": ["END"],
        "metadata": {"user_id": "u-1"},
        "stream": True,
        "tools": [
            {
                "name": "get_weather",
                "description": "Weather by city",
                "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
            },
            {"type": "web_search_20250305", "name": "web_search"},
        ],
        "tool_choice": {"type": "any", "disable_parallel_tool_use": True},
        "messages": [
            {"role": "user", "content": "weather in Paris?"},
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "hmm"},
                    {"type": "text", "text": "checking"},
                    {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "sunny"},
                    {"type": "text", "text": "and this?"},
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"},
                    },
                ],
            },
        ],
    }


def test_anthropic_to_openai_request_table():
    out = anthropic_to_openai_request(_anthropic_request(), upstream_model="gpt-4o")

    assert out["model"] == "gpt-4o"
    assert out["max_completion_tokens"] == 1024
    assert out["stop"] == ["END"]
    assert out["temperature"] == 0.2
    assert out["user"] == "u-1"
    assert out["stream"] is True
    assert out["stream_options"] == {"include_usage": True}
    assert out["tool_choice"] == "required"
    assert out["parallel_tool_calls"] is False
    assert [t["function"]["name"] for t in out["tools"]] == ["get_weather"]
    assert out["tools"][0]["function"]["parameters"]["properties"]["city"]["type"] == "string"

    messages = out["messages"]
    assert messages[0] == {"role": "system", "content": "be brief\nbe kind"}
    assert messages[1] == {"role": "user", "content": "weather in Paris?"}
    assert messages[2]["role"] == "assistant"
    assert messages[2]["content"] == "checking"
    assert messages[2]["tool_calls"][0]["id"] == "toolu_1"
    assert messages[2]["tool_calls"][0]["function"]["arguments"] == '{"city": "Paris"}'
    # Tool results come first, as their own messages.
    assert messages[3] == {"role": "tool", "tool_call_id": "toolu_1", "content": "sunny"}
    assert messages[4]["role"] == "user"
    assert messages[4]["content"][0] == {"type": "text", "text": "and this?"}
    assert messages[4]["content"][1]["image_url"]["url"] == "data:image/jpeg;base64,QUJD"


def test_openai_to_anthropic_request_table():
    payload = {
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "sys one"},
            {"role": "developer", "content": [{"type": "text", "text": "sys two"}]},
            {"role": "user", "content": "hi"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "c1", "type": "function", "function": {"name": "f", "arguments": '{"a":1}'}},
                    {"id": "c2", "type": "function", "function": {"name": "g", "arguments": ""}},
                ],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "r1"},
            {"role": "tool", "tool_call_id": "c2", "content": "r2"},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "look"},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                    {"type": "image_url", "image_url": {"url": "https://x/y.png"}},
                ],
            },
        ],
        "stop": "END",
        "user": "u-9",
        "seed": 7,
        "n": 1,
        "tools": [{"type": "function", "function": {"name": "f", "parameters": {"type": "object"}}}],
        "tool_choice": {"type": "function", "function": {"name": "f"}},
        "parallel_tool_calls": False,
    }
    out = openai_to_anthropic_request(payload, upstream_model="claude-x", default_max_tokens=4096)

    assert out["model"] == "claude-x"
    assert out["system"] == "sys one\nsys two"
    assert out["max_tokens"] == 4096
    assert out["stop_sequences"] == ["END"]
    assert out["metadata"] == {"user_id": "u-9"}
    assert "seed" not in out and "n" not in out
    assert out["tools"] == [{"name": "f", "input_schema": {"type": "object"}}]
    assert out["tool_choice"] == {"type": "tool", "name": "f", "disable_parallel_tool_use": True}

    messages = out["messages"]
    assert messages[0] == {"role": "user", "content": "hi"}
    assert messages[1]["content"] == [
        {"type": "tool_use", "id": "c1", "name": "f", "input": {"a": 1}},
        {"type": "tool_use", "id": "c2", "name": "g", "input": {}},
    ]
    assert messages[2] == {
        "role": "user",
        "content": [
            {"type": "tool_result", "tool_use_id": "c1", "content": "r1"},
            {"type": "tool_result", "tool_use_id": "c2", "content": "r2"},
        ],
    }
    assert messages[3]["content"][1]["source"] == {
        "type": "base64",
        "media_type": "image/png",
        "data": "AAAA",
    }
    assert messages[3]["content"][2]["source"] == {"type": "url", "url": "https://x/y.png"}


def test_openai_max_completion_tokens_wins():
    out = openai_to_anthropic_request(
        {"messages": [], "max_tokens": 10, "max_completion_tokens": 20},
        upstream_model=None,
        default_max_tokens=4096,
    )
    assert out["max_tokens"] == 20


def test_invalid_tool_arguments_raise_translation_error():
    payload = {
        "messages": [
            {
                "role": "assistant",
                "tool_calls": [{"id": "c", "function": {"name": "f", "arguments": "{oops"}}],
            }
        ]
    }
    with pytest.raises(TranslationError):
        openai_to_anthropic_request(payload, upstream_model="m", default_max_tokens=1)


@pytest.mark.parametrize("payload", [[], "x", {"messages": "nope"}, {"messages": [1]}])
def test_malformed_requests_raise_translation_error(payload):
    with pytest.raises(TranslationError):
        adapt_request_payload(
            payload,
            from_shape="anthropic",
            to_shape="openai",
            upstream_model="m",
            default_max_tokens=1,
        )


def test_same_shape_only_swaps_model():
    payload = {"model": "claude-sonnet-4-5", "messages": [], "top_k": 3}
    out = adapt_request_payload(
        payload,
        from_shape="anthropic",
        to_shape="anthropic",
        upstream_model="mapped",
        default_max_tokens=1,
    )
    assert out == {"model": "mapped", "messages": [], "top_k": 3}
    assert payload["model"] == "claude-sonnet-4-5"


def test_request_round_trip_preserves_lossless_fields():
    original = {
        "model": "claude-sonnet-4-5",
        "system": "be brief",
        "max_tokens": 512,
        "temperature": 0.5,
        "top_p": 0.9,
        "stop_sequences": ["STOP"],
        "tools": [{"name": "f", "description": "d", "input_schema": {"type": "object"}}],
        "tool_choice": {"type": "auto"},
        "messages": [
            {"role": "user", "content": "hello"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "calling"},
                    {"type": "tool_use", "id": "t1", "name": "f", "input": {"q": "x"}},
                ],
            },
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "42"}]},
        ],
    }
    openai = anthropic_to_openai_request(original, upstream_model=None)
    back = openai_to_anthropic_request(openai, upstream_model=None, default_max_tokens=1)

    for key in ("model", "system", "max_tokens", "temperature", "top_p", "stop_sequences", "tools", "tool_choice"):
        assert back[key] == original[key]
    assert back["messages"] == original["messages"]


def test_openai_response_to_anthropic():
    payload = {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "done",
                    "tool_calls": [
                        {"id": "c1", "type": "function", "function": {"name": "f", "arguments": '{"x":1}'}}
                    ],
                },
                "finish_reason": "tool_calls",
            },
            {"index": 1, "message": {"role": "assistant", "content": "ignored"}},
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "prompt_tokens_details": {"cached_tokens": 4}},
    }
    out = openai_to_anthropic_response(payload)
    assert out["id"] == "chatcmpl-1"
    assert out["type"] == "message"
    assert out["content"] == [
        {"type": "text", "text": "done"},
        {"type": "tool_use", "id": "c1", "name": "f", "input": {"x": 1}},
    ]
    assert out["stop_reason"] == "tool_use"
    assert out["usage"] == {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 4}


def test_anthropic_response_to_openai():
    payload = {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-x",
        "content": [
            {"type": "thinking", "thinking": "secret"},
            {"type": "text", "text": "a"},
            {"type": "text", "text": "b"},
        ],
        "stop_reason": "max_tokens",
        "usage": {"input_tokens": 3, "output_tokens": 4},
    }
    out = anthropic_to_openai_response(payload)
    assert out["object"] == "chat.completion"
    assert out["created"] == 0
    assert out["choices"][0]["message"] == {"role": "assistant", "content": "ab"}
    assert out["choices"][0]["finish_reason"] == "length"
    assert out["usage"] == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}


def test_response_round_trip_preserves_lossless_fields():
    original = {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-x",
        "content": [
            {"type": "text", "text": "hi"},
            {"type": "tool_use", "id": "t", "name": "f", "input": {"k": [1, 2]}},
        ],
        "stop_reason": "tool_use",
        "stop_sequence": None,
        "usage": {"input_tokens": 1, "output_tokens": 2},
    }
    back = adapt_response_payload(
        adapt_response_payload(original, from_shape="anthropic", to_shape="openai"),
        from_shape="openai",
        to_shape="anthropic",
    )
    assert back == original


@pytest.mark.parametrize(
    "stop_reason, finish_reason",
    [("end_turn", "stop"), ("max_tokens", "length"), ("tool_use", "tool_calls"), ("stop_sequence", "stop")],
)
def test_stop_reason_mapping(stop_reason, finish_reason):
    assert map_stop_reason(stop_reason) == finish_reason


def test_finish_reason_mapping():
    assert map_finish_reason("stop") == "end_turn"
    assert map_finish_reason("length") == "max_tokens"
    assert map_finish_reason("tool_calls") == "tool_use"
    assert map_finish_reason("content_filter") == "end_turn"
    assert map_finish_reason(None) is None


def test_response_without_choices_is_translation_error():
    with pytest.raises(TranslationError):
        adapt_response_payload({"choices": []}, from_shape="openai", to_shape="anthropic")
