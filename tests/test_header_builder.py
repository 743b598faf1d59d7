from __future__ import annotations

from cligate.models import CliFamily
from cligate.protocol.header_builder import build_upstream_headers, env_var_header_name


def test_openai_non_stream_default_auth(make_provider):
    provider = make_provider("p1", type="openai")
    headers = build_upstream_headers(provider, cli_family=CliFamily.CODEX, is_stream=False)
    assert headers["Accept"] == "application/json"
    assert headers["Content-Type"] == "application/json"
    assert headers["Authorization"] == "Bearer sk-p1"
    assert "x-api-key" not in {k.lower() for k in headers.keys()}


def test_anthropic_stream_has_anthropic_version(make_provider):
    provider = make_provider("p1")
    headers = build_upstream_headers(provider, cli_family=CliFamily.CLAUDE, is_stream=True)
    assert headers["Accept"] == "text/event-stream"
    assert headers["anthropic-version"] == "2023-06-01"
    assert headers["x-api-key"] == "sk-p1"
    assert "Authorization" not in headers


def test_azure_and_bedrock_auth(make_provider):
    azure = build_upstream_headers(
        make_provider("az", type="azure"), cli_family=CliFamily.CODEX, is_stream=False
    )
    assert azure["api-key"] == "sk-az"
    bedrock = build_upstream_headers(
        make_provider("br", type="bedrock"), cli_family=CliFamily.CLAUDE, is_stream=True
    )
    assert bedrock["Authorization"] == "Bearer sk-br"
    assert bedrock["Accept"] == "application/vnd.amazon.eventstream"
    assert "anthropic-version" not in bedrock


def test_respects_custom_auth_header(make_provider):
    provider = make_provider("p1", type="openai", custom_headers={"api-key": "custom"})
    headers = build_upstream_headers(provider, cli_family=CliFamily.CODEX, is_stream=False)
    # should not inject Authorization when custom auth is present
    lowered = {k.lower(): v for k, v in headers.items()}
    assert "authorization" not in lowered
    assert lowered["api-key"] == "custom"


def test_env_vars_become_x_env_headers(make_provider):
    provider = make_provider(
        "p1",
        env_vars={"CLAUDE_CODE_MAX_OUTPUT_TOKENS": "64000", "EMPTY": ""},
        codex_env_vars={"OPENAI_ORG": "org-1"},
    )
    claude = build_upstream_headers(provider, cli_family=CliFamily.CLAUDE, is_stream=False)
    assert claude["x-env-claude-code-max-output-tokens"] == "64000"
    assert "x-env-empty" not in claude

    codex = build_upstream_headers(provider, cli_family=CliFamily.CODEX, is_stream=False)
    assert codex["x-env-openai-org"] == "org-1"
    assert "x-env-claude-code-max-output-tokens" not in codex


def test_anthropic_beta_passes_through_only_for_matching_shapes(make_provider):
    client_headers = {"Anthropic-Beta": "tools-2024", "Authorization": "Bearer cligate-proxy"}
    native = build_upstream_headers(
        make_provider("p1"),
        cli_family=CliFamily.CLAUDE,
        is_stream=False,
        client_headers=client_headers,
    )
    assert native["anthropic-beta"] == "tools-2024"
    # The CLI's placeholder credential never reaches the upstream.
    assert "Authorization" not in native

    translated = build_upstream_headers(
        make_provider("p2", type="openai"),
        cli_family=CliFamily.CLAUDE,
        is_stream=False,
        client_headers=client_headers,
    )
    assert "anthropic-beta" not in translated
    assert translated["Authorization"] == "Bearer sk-p2"


def test_env_var_header_name():
    assert env_var_header_name("ANTHROPIC_MAX_CONTEXT_WINDOW") == "x-env-anthropic-max-context-window"
