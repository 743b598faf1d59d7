"""
Per-candidate translation: the CLI request becomes a concrete upstream
HTTP request for one provider, and the provider's response (buffered or
streamed) becomes bytes in the CLI's wire shape.
"""

from __future__ import annotations

import copy
import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit

from cligate.models.provider import CliFamily, ProtocolFamily
from cligate.protocol.eventstream import eventstream_to_anthropic_sse
from cligate.protocol.header_builder import build_upstream_headers
from cligate.protocol.request_adapter import adapt_request_payload
from cligate.protocol.response_adapter import adapt_response_payload
from cligate.protocol.stream_adapter import adapt_stream
from cligate.routing.chain import Candidate
from cligate.routing.exceptions import TranslationError
from cligate.settings import settings

_CANONICAL_CLIENT_PATHS = {
    "anthropic": "/v1/messages",
    "openai": "/v1/chat/completions",
}


@dataclass(frozen=True)
class UpstreamRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    stream: bool


def join_url(base_url: str, path: str, query: str = "") -> str:
    """
    Join base URL and request path with exactly one slash between them,
    dropping a duplicated `/v1` when the base already ends with it.
    """
    base = base_url.rstrip("/")
    if not path.startswith("/"):
        path = "/" + path
    if urlsplit(base).path.endswith("/v1") and (path == "/v1" or path.startswith("/v1/")):
        path = path[len("/v1") :]
    url = base + path
    if query:
        url = f"{url}?{query}"
    return url


def _int_env(env_vars: Mapping[str, str], name: str) -> int | None:
    raw = env_vars.get(name)
    if not raw:
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


def apply_env_parameters(body: dict[str, Any], *, shape: str, env_vars: Mapping[str, str]) -> None:
    """
    Place environment-derived knobs into the upstream body.

    CLAUDE_CODE_MAX_OUTPUT_TOKENS caps the output-token field;
    MAX_THINKING_TOKENS sets the thinking budget on Anthropic-shape bodies
    with thinking enabled, as long as it stays below max_tokens.
    """
    cap = _int_env(env_vars, "CLAUDE_CODE_MAX_OUTPUT_TOKENS")
    if cap:
        if shape == "anthropic":
            field = "max_tokens"
        else:
            field = "max_tokens" if "max_tokens" in body else "max_completion_tokens"
        current = body.get(field)
        body[field] = min(current, cap) if isinstance(current, int) else cap

    budget = _int_env(env_vars, "MAX_THINKING_TOKENS")
    thinking = body.get("thinking")
    if budget and shape == "anthropic" and isinstance(thinking, dict):
        if thinking.get("type") == "enabled" and budget < (body.get("max_tokens") or 0):
            thinking["budget_tokens"] = budget


def _upstream_url(
    candidate: Candidate, *, cli_family: CliFamily, path: str, query: str, stream: bool
) -> str:
    provider = candidate.provider
    protocol = provider.protocol
    client_shape = cli_family.wire_shape

    if protocol.value == client_shape:
        # Native shape on both sides: forward the client's path verbatim.
        return join_url(provider.base_url, path, query)

    canonical = _CANONICAL_CLIENT_PATHS[client_shape]
    if path.rstrip("/") != canonical and not path.rstrip("/").endswith(canonical[3:]):
        raise TranslationError(
            f"path {path!r} has no {protocol.value} equivalent",
            provider_id=provider.id,
        )

    if protocol is ProtocolFamily.ANTHROPIC:
        return join_url(provider.base_url, "/v1/messages")
    if protocol is ProtocolFamily.OPENAI:
        return join_url(provider.base_url, "/v1/chat/completions")

    if not candidate.model:
        raise TranslationError(
            f"{protocol.value} provider needs a model in its URL but none was resolved",
            provider_id=provider.id,
        )
    model = quote(candidate.model, safe="")
    if protocol is ProtocolFamily.AZURE:
        return join_url(
            provider.base_url,
            f"/openai/deployments/{model}/chat/completions",
            f"api-version={settings.azure_api_version}",
        )
    action = "invoke-with-response-stream" if stream else "invoke"
    return join_url(provider.base_url, f"/model/{model}/{action}")


def build_upstream_request(
    candidate: Candidate,
    *,
    cli_family: CliFamily,
    payload: dict[str, Any],
    path: str,
    query: str = "",
    client_headers: Mapping[str, str] | None = None,
) -> UpstreamRequest:
    """
    Translate the CLI request for one candidate. Raises TranslationError
    when the request cannot be expressed in the provider's protocol family.
    """
    provider = candidate.provider
    protocol = provider.protocol
    stream = payload.get("stream") is True

    try:
        body = adapt_request_payload(
            copy.deepcopy(payload),
            from_shape=cli_family.wire_shape,
            to_shape=protocol.wire_shape,
            upstream_model=candidate.model,
            default_max_tokens=settings.default_max_tokens,
        )
    except TranslationError as exc:
        exc.provider_id = provider.id
        raise
    apply_env_parameters(
        body, shape=protocol.wire_shape, env_vars=provider.env_vars_for(cli_family)
    )

    if protocol is ProtocolFamily.AZURE:
        body.pop("model", None)
    elif protocol is ProtocolFamily.BEDROCK:
        body.pop("model", None)
        body.pop("stream", None)
        body["anthropic_version"] = settings.bedrock_anthropic_version

    return UpstreamRequest(
        method="POST",
        url=_upstream_url(candidate, cli_family=cli_family, path=path, query=query, stream=stream),
        headers=build_upstream_headers(
            provider, cli_family=cli_family, is_stream=stream, client_headers=client_headers
        ),
        body=body,
        stream=stream,
    )


def translate_response_body(body: bytes, *, candidate: Candidate, cli_family: CliFamily) -> bytes:
    """Translate a buffered successful upstream body into the client shape."""
    from_shape = candidate.provider.protocol.wire_shape
    to_shape = cli_family.wire_shape
    if from_shape == to_shape:
        return body
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise TranslationError(
            f"upstream response is not JSON: {exc}", provider_id=candidate.provider_id
        ) from exc
    try:
        translated = adapt_response_payload(payload, from_shape=from_shape, to_shape=to_shape)
    except TranslationError as exc:
        exc.provider_id = candidate.provider_id
        raise
    return json.dumps(translated, ensure_ascii=False).encode("utf-8")


def translate_stream(
    chunks: AsyncIterator[bytes],
    *,
    candidate: Candidate,
    cli_family: CliFamily,
    request_model: str | None,
) -> AsyncIterator[bytes]:
    """Translate an upstream stream into client-shape SSE, chunk by chunk."""
    if candidate.provider.protocol is ProtocolFamily.BEDROCK:
        chunks = eventstream_to_anthropic_sse(chunks)
    return adapt_stream(
        chunks,
        from_shape=candidate.provider.protocol.wire_shape,
        to_shape=cli_family.wire_shape,
        request_model=request_model,
    )


__all__ = [
    "UpstreamRequest",
    "apply_env_parameters",
    "build_upstream_request",
    "join_url",
    "translate_response_body",
    "translate_stream",
]
