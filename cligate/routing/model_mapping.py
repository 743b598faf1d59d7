from __future__ import annotations

from cligate.models.provider import ModelRole, Provider

# Tier keywords checked against the requested model name, in priority order.
_TIER_KEYWORDS: tuple[tuple[str, ModelRole], ...] = (
    ("haiku", ModelRole.HAIKU),
    ("opus", ModelRole.OPUS),
    ("sonnet", ModelRole.SONNET),
)


def map_model(provider: Provider, requested_model: str | None, *, thinking: bool) -> str | None:
    """
    Pick the upstream model for a provider without an explicit override.

    Priority: reasoning model when thinking is enabled, then the tier the
    requested name mentions (haiku, opus, sonnet), then the provider's
    default model, then the requested model unchanged. A role the provider
    leaves unset falls through to the next rule.
    """
    if thinking:
        reasoning = provider.model_for_role(ModelRole.REASONING)
        if reasoning:
            return reasoning

    lowered = (requested_model or "").lower()
    for keyword, role in _TIER_KEYWORDS:
        if keyword in lowered:
            mapped = provider.model_for_role(role)
            if mapped:
                return mapped

    default = provider.model_for_role(ModelRole.DEFAULT)
    if default:
        return default
    return requested_model


__all__ = ["map_model"]
