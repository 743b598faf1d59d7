"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that `import cligate`
works consistently in all tests, and provides small builders for providers,
profiles and snapshots.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pytest


# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from cligate.models import CliFamily, ConfigSnapshot, Profile, Provider  # noqa: E402


def build_provider(provider_id: str = "A", **overrides: Any) -> Provider:
    data: Dict[str, Any] = {
        "id": provider_id,
        "base_url": f"https://{provider_id.lower()}.example.com",
        "auth_token": f"sk-{provider_id.lower()}",  # pragma: allowlist secret
    }
    data.update(overrides)
    return Provider.model_validate(data)


def build_snapshot(
    providers: Dict[str, Provider],
    *,
    chain: Optional[list] = None,
    routing: Optional[Dict[str, Any]] = None,
    cli_family: CliFamily = CliFamily.CLAUDE,
    **profile_fields: Any,
) -> ConfigSnapshot:
    profile = Profile.model_validate(
        {
            "name": "test",
            "providers": list(providers.keys()) if chain is None else chain,
            "routing": routing or {},
            **profile_fields,
        }
    )
    return ConfigSnapshot(profile=profile, providers=providers, cli_family=cli_family)


@pytest.fixture
def make_provider():
    return build_provider


@pytest.fixture
def make_snapshot():
    return build_snapshot
