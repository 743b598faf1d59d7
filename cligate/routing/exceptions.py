from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Raised when the snapshot cannot serve a request: missing profile or
    provider, or an empty candidate chain. Never triggers failover."""


class TranslationError(ValueError):
    """Raised when a request or response cannot be mapped to or from one
    protocol family."""

    def __init__(self, message: str, *, provider_id: str | None = None):
        self.provider_id = provider_id
        super().__init__(message)


__all__ = ["ConfigurationError", "TranslationError"]
