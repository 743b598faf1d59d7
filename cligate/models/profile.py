from __future__ import annotations

import re
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cligate.models.provider import CliFamily, Provider
from cligate.routing.exceptions import ConfigurationError


class Scenario(str, Enum):
    """
    Request classification labels, declared in classification priority order.
    """

    THINK = "think"
    IMAGE = "image"
    LONG_CONTEXT = "longContext"
    WEB_SEARCH = "webSearch"
    BACKGROUND = "background"


class RouteEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provider_id: str = Field(..., alias="name", description="Referenced provider id")
    model: Optional[str] = Field(None, description="Model override for this scenario")


class ScenarioRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: Tuple[RouteEntry, ...] = Field(default_factory=tuple)


class Profile(BaseModel):
    """
    Default chain plus per-scenario routing for one named profile.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Profile name")
    providers: Tuple[str, ...] = Field(
        default_factory=tuple, description="Default chain of provider ids"
    )
    long_context_threshold: Optional[int] = Field(
        None, description="Estimated token count above which a request is longContext", gt=0
    )
    background_model_pattern: str = Field(
        "haiku", description="Regex matched against the requested model for background"
    )
    routing: Dict[Scenario, ScenarioRoute] = Field(default_factory=dict)

    @field_validator("background_model_pattern")
    @classmethod
    def _compile_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return value

    def route_for(self, scenario: Optional[Scenario]) -> Tuple[RouteEntry, ...]:
        if scenario is None:
            return ()
        route = self.routing.get(scenario)
        return route.providers if route else ()

    def referenced_provider_ids(self) -> list[str]:
        ids = list(self.providers)
        for route in self.routing.values():
            ids.extend(entry.provider_id for entry in route.providers)
        return ids


class ConfigSnapshot(BaseModel):
    """
    Read-only view of one profile and the providers it references, loaded
    once per proxy session and shared by every request.
    """

    model_config = ConfigDict(frozen=True)

    profile: Profile
    providers: Dict[str, Provider]
    cli_family: CliFamily

    def provider(self, provider_id: str) -> Provider:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise ConfigurationError(
                f"Provider '{provider_id}' is not defined in the configuration"
            ) from None


__all__ = ["ConfigSnapshot", "Profile", "RouteEntry", "Scenario", "ScenarioRoute"]
