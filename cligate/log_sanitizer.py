from __future__ import annotations

from collections.abc import Mapping

REDACTED = "***REDACTED***"

# Upstream error bodies kept in the request log are cut to this length.
MAX_LOGGED_BODY_CHARS = 500


_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "api-key",
    "x-auth-token",
    "x-access-token",
    "cookie",
    "set-cookie",
}


def sanitize_headers_for_log(
    headers: Mapping[str, str], *, mask_token: str = REDACTED
) -> dict[str, str]:
    """
    Mask credentials in a header mapping before it is logged.

    Well-known auth headers are masked by name. Any header whose name
    mentions key/token/secret/auth/cookie/session is masked too, which
    covers the forwarded x-env-* headers that carry provider tokens.
    """
    sanitized: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in _SENSITIVE_HEADER_NAMES:
            sanitized[name] = mask_token
            continue

        if any(
            token in lower_name
            for token in ("key", "token", "secret", "auth", "cookie", "session")
        ):
            sanitized[name] = mask_token
            continue

        sanitized[name] = value
    return sanitized


def truncate_for_log(text: str | None, limit: int = MAX_LOGGED_BODY_CHARS) -> str | None:
    if text is None:
        return None
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


__all__ = [
    "MAX_LOGGED_BODY_CHARS",
    "REDACTED",
    "sanitize_headers_for_log",
    "truncate_for_log",
]
