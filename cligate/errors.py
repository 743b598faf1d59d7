from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field

from cligate.models.provider import CliFamily


class ErrorResponse(BaseModel):
    """
    Error payload produced by the proxy itself (never by an upstream).

    It is rendered into the wire shape the calling CLI understands by
    `render_cli_error` before it leaves the listener.
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def configuration_error(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="configuration_error",
        message=message,
        details=details,
    )


def failover_exhausted(attempts: int) -> HTTPException:
    # Per-candidate detail goes to the request log only.
    return http_error(
        status.HTTP_502_BAD_GATEWAY,
        error="failover_exhausted",
        message=(
            f"All {attempts} upstream provider attempt(s) failed before a response "
            "could be streamed; failover was exhausted"
        ),
    )


def render_cli_error(cli_family: CliFamily, payload: ErrorResponse) -> dict[str, Any]:
    """
    Shape an error body the way the calling CLI's own API would.

    claude expects the Anthropic error envelope, codex/opencode the OpenAI one.
    """
    if cli_family.wire_shape == "anthropic":
        return {
            "type": "error",
            "error": {"type": payload.error, "message": payload.message},
        }
    return {
        "error": {
            "type": payload.error,
            "message": payload.message,
            "code": payload.code,
        }
    }


__all__ = [
    "ErrorResponse",
    "bad_request",
    "configuration_error",
    "failover_exhausted",
    "http_error",
    "render_cli_error",
]
