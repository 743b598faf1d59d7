"""
Upstream request header construction.

Conventions:
- anthropic: `x-api-key` plus `anthropic-version`
- openai / bedrock: `Authorization: Bearer <credential>`
- azure: `api-key`
- stream requests accept `text/event-stream` (Bedrock streams use
  `application/vnd.amazon.eventstream`)
- every non-empty provider env var of the session's CLI family is sent as
  `x-env-<lower-kebab-name>`
- provider custom_headers override everything above
"""

from __future__ import annotations

from collections.abc import Mapping

from cligate.models.provider import CliFamily, ProtocolFamily, Provider
from cligate.settings import settings

# Client headers forwarded when client and upstream speak the same wire shape.
_PASSTHROUGH_CLIENT_HEADERS = ("anthropic-beta",)


def _has_custom_auth_header(custom_headers: Mapping[str, str] | None) -> bool:
    if not custom_headers:
        return False
    lowered = {str(k).strip().lower() for k in custom_headers.keys()}
    return bool(lowered & {"authorization", "x-api-key", "api-key"})


def env_var_header_name(name: str) -> str:
    return "x-env-" + name.strip().lower().replace("_", "-")


def build_upstream_headers(
    provider: Provider,
    *,
    cli_family: CliFamily,
    is_stream: bool,
    client_headers: Mapping[str, str] | None = None,
) -> dict[str, str]:
    protocol = provider.protocol
    if is_stream:
        accept = (
            "application/vnd.amazon.eventstream"
            if protocol is ProtocolFamily.BEDROCK
            else "text/event-stream"
        )
    else:
        accept = "application/json"
    headers: dict[str, str] = {
        "Accept": accept,
        "Content-Type": "application/json",
    }

    credential = provider.credential.get_secret_value()
    # An auth header in custom_headers replaces the default one.
    if not _has_custom_auth_header(provider.custom_headers):
        if protocol is ProtocolFamily.ANTHROPIC:
            headers["x-api-key"] = credential
        elif protocol is ProtocolFamily.AZURE:
            headers["api-key"] = credential
        else:
            headers["Authorization"] = f"Bearer {credential}"

    if protocol is ProtocolFamily.ANTHROPIC:
        headers["anthropic-version"] = settings.anthropic_version

    if client_headers and cli_family.wire_shape == protocol.wire_shape:
        lowered = {k.lower(): v for k, v in client_headers.items()}
        for name in _PASSTHROUGH_CLIENT_HEADERS:
            if lowered.get(name):
                headers[name] = lowered[name]

    for name, value in provider.env_vars_for(cli_family).items():
        if value:
            headers[env_var_header_name(name)] = value

    if provider.custom_headers:
        headers.update(provider.custom_headers)

    return headers


__all__ = ["build_upstream_headers", "env_var_header_name"]
