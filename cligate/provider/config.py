"""
Configuration snapshot loading.

Providers and profiles live in one JSON document (CLIGATE_CONFIG_PATH):

    {
      "providers": {"A": {"base_url": "...", "auth_token": "...", "type": "openai"}},
      "profiles": {
        "work": {"providers": ["A", "B"], "long_context_threshold": 60000,
                 "routing": {"longContext": {"providers": [{"name": "C"}]}}},
        "legacy": ["A", "B"]
      }
    }

`load_snapshot` resolves one profile and only the providers it references
into a frozen ConfigSnapshot. A missing profile or an unresolvable provider
reference fails session start with ConfigurationError. Provider definitions
that are broken but unused are skipped with a warning so that a single bad
entry does not block unrelated profiles.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from cligate.logging_config import logger
from cligate.models.profile import ConfigSnapshot, Profile
from cligate.models.provider import CliFamily, Provider
from cligate.routing.exceptions import ConfigurationError
from cligate.settings import settings


def parse_status_code_list(value: str) -> List[int]:
    """
    Parse a comma-separated list of HTTP status codes or ranges into integers.

    Examples:
        "429,500,502-504" -> [429, 500, 502, 503, 504]
    """
    result: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_s, end_s = part.split("-", 1)
            try:
                start = int(start_s)
                end = int(end_s)
            except ValueError:
                logger.warning("config: invalid status code range %r, skipping", part)
                continue
            if start > end:
                start, end = end, start
            for code in range(start, end + 1):
                if code not in result:
                    result.append(code)
        else:
            try:
                code = int(part)
            except ValueError:
                logger.warning("config: invalid status code %r, skipping", part)
                continue
            if code not in result:
                result.append(code)
    return result


def default_retryable_status_codes() -> List[int]:
    return parse_status_code_list(settings.retryable_status_codes)


def read_config_document(path: str | Path | None = None) -> Dict[str, Any]:
    config_path = Path(path or settings.config_path).expanduser()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file {config_path} does not exist") from None
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Configuration file {config_path} is not valid JSON: {exc}"
        ) from exc
    if not isinstance(document, dict):
        raise ConfigurationError(f"Configuration file {config_path} must hold a JSON object")
    return document


def _build_provider(provider_id: str, raw: Any) -> Provider:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Provider '{provider_id}' must be a JSON object")
    data = dict(raw)
    data["id"] = provider_id
    codes = data.get("retryable_status_codes")
    if isinstance(codes, str):
        data["retryable_status_codes"] = parse_status_code_list(codes)
    try:
        return Provider.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Provider '{provider_id}' is invalid: {exc}") from exc


def _build_profile(name: str, raw: Any) -> Profile:
    if isinstance(raw, list):
        # Legacy shape: a bare default chain without routing.
        raw = {"providers": raw}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Profile '{name}' must be a JSON object or a list")
    data = dict(raw)
    data["name"] = name
    try:
        return Profile.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Profile '{name}' is invalid: {exc}") from exc


def list_profiles(document: Dict[str, Any]) -> List[str]:
    profiles = document.get("profiles")
    if not isinstance(profiles, dict):
        return []
    return sorted(profiles.keys())


def build_snapshot(
    document: Dict[str, Any], profile_name: str, cli_family: CliFamily | str
) -> ConfigSnapshot:
    try:
        family = CliFamily(cli_family)
    except ValueError:
        raise ConfigurationError(f"Unknown CLI family '{cli_family}'") from None

    profiles = document.get("profiles") or {}
    if not isinstance(profiles, dict) or profile_name not in profiles:
        raise ConfigurationError(f"Profile '{profile_name}' is not defined in the configuration")
    profile = _build_profile(profile_name, profiles[profile_name])

    raw_providers = document.get("providers") or {}
    if not isinstance(raw_providers, dict):
        raise ConfigurationError("'providers' must be a JSON object keyed by provider id")

    referenced = profile.referenced_provider_ids()
    providers: Dict[str, Provider] = {}
    for provider_id in referenced:
        if provider_id in providers:
            continue
        if provider_id not in raw_providers:
            raise ConfigurationError(
                f"Profile '{profile_name}' references unknown provider '{provider_id}'"
            )
        providers[provider_id] = _build_provider(provider_id, raw_providers[provider_id])

    for provider_id, raw in raw_providers.items():
        if provider_id in providers:
            continue
        try:
            _build_provider(provider_id, raw)
        except ConfigurationError as exc:
            logger.warning("config: skipping unused invalid provider %s: %s", provider_id, exc)

    logger.info(
        "config: loaded profile %s for %s with providers=%s",
        profile_name,
        family.value,
        list(providers.keys()),
    )
    return ConfigSnapshot(profile=profile, providers=providers, cli_family=family)


def load_snapshot(
    profile_name: str,
    cli_family: CliFamily | str,
    *,
    path: str | Path | None = None,
) -> ConfigSnapshot:
    """
    Load the configuration document and freeze one profile into a snapshot.
    """
    return build_snapshot(read_config_document(path), profile_name, cli_family)


__all__ = [
    "build_snapshot",
    "default_retryable_status_codes",
    "list_profiles",
    "load_snapshot",
    "parse_status_code_list",
    "read_config_document",
]
