from .profile import ConfigSnapshot, Profile, RouteEntry, Scenario, ScenarioRoute
from .provider import CliFamily, ModelRole, ProtocolFamily, Provider, WireShape

__all__ = [
    "CliFamily",
    "ConfigSnapshot",
    "ModelRole",
    "Profile",
    "ProtocolFamily",
    "Provider",
    "RouteEntry",
    "Scenario",
    "ScenarioRoute",
    "WireShape",
]
