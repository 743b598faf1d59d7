"""
Candidate chain construction.

`build` turns (profile, scenario) into ordered provider references;
`resolve_chain` binds each reference to its Provider and to the model that
will be sent upstream. Both run synchronously before any I/O.
"""

from __future__ import annotations

from dataclasses import dataclass

from cligate.logging_config import logger
from cligate.models.profile import ConfigSnapshot, Profile, Scenario
from cligate.models.provider import Provider
from cligate.routing.exceptions import ConfigurationError
from cligate.routing.model_mapping import map_model


@dataclass(frozen=True)
class ChainEntry:
    provider_id: str
    model_override: str | None = None


@dataclass(frozen=True)
class Candidate:
    """One resolved (provider, model) pair of a request's chain."""

    index: int
    provider: Provider
    model: str | None
    model_override: str | None = None

    @property
    def provider_id(self) -> str:
        return self.provider.id


def build(profile: Profile, scenario: Scenario | None) -> tuple[ChainEntry, ...]:
    """
    Scenario route entries first, then the default chain minus providers
    already listed. Every provider appears at most once; for a scenario
    route that repeats a provider the first entry wins.
    """
    entries: list[ChainEntry] = []
    seen: set[str] = set()

    for route_entry in profile.route_for(scenario):
        if route_entry.provider_id in seen:
            continue
        seen.add(route_entry.provider_id)
        entries.append(ChainEntry(route_entry.provider_id, route_entry.model))

    for provider_id in profile.providers:
        if provider_id in seen:
            continue
        seen.add(provider_id)
        entries.append(ChainEntry(provider_id))

    if not entries:
        raise ConfigurationError(
            f"Profile '{profile.name}' has no providers to route "
            f"{scenario.value if scenario else 'default'} requests to"
        )
    return tuple(entries)


def resolve_chain(
    snapshot: ConfigSnapshot,
    entries: tuple[ChainEntry, ...],
    *,
    requested_model: str | None,
    thinking: bool,
) -> tuple[Candidate, ...]:
    candidates: list[Candidate] = []
    for index, entry in enumerate(entries):
        provider = snapshot.provider(entry.provider_id)
        if entry.model_override:
            model = entry.model_override
        else:
            model = map_model(provider, requested_model, thinking=thinking)
        candidates.append(
            Candidate(
                index=index,
                provider=provider,
                model=model,
                model_override=entry.model_override,
            )
        )
    logger.debug(
        "routing: chain=%s",
        [(c.provider_id, c.model) for c in candidates],
    )
    return tuple(candidates)


__all__ = ["Candidate", "ChainEntry", "build", "resolve_chain"]
