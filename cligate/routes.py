from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any, List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from cligate.errors import (
    ErrorResponse,
    bad_request,
    configuration_error,
    failover_exhausted,
    render_cli_error,
)
from cligate.failover import Attempt, ExecutorResult, FailoverExecutor, FailoverPolicy
from cligate.log_sanitizer import sanitize_headers_for_log
from cligate.logging_config import logger
from cligate.models.profile import ConfigSnapshot
from cligate.request_log import LogFilter, RequestLog, RequestLogEntry
from cligate.routing import chain as chain_builder
from cligate.routing.exceptions import ConfigurationError
from cligate.routing.scenario import classify, thinking_requested
from cligate.settings import settings
from cligate.upstream import ConnectionRegistry, HttpAttempt

# Builds the attempt callable for one inbound request.
AttemptFactory = Callable[..., Attempt]

# Status reported when the CLI went away before a response was ready.
CLIENT_CLOSED_REQUEST = 499


class HealthResponse(BaseModel):
    status: str = "ok"


class RequestLogResponse(BaseModel):
    entries: List[RequestLogEntry]


def _http_attempt_factory(
    registry: ConnectionRegistry, transport: httpx.AsyncBaseTransport | None
) -> AttemptFactory:
    def factory(
        *,
        cli_family,
        payload: dict[str, Any],
        path: str,
        query: str,
        client_headers: Mapping[str, str],
    ) -> Attempt:
        return HttpAttempt(
            cli_family=cli_family,
            payload=payload,
            path=path,
            query=query,
            client_headers=client_headers,
            registry=registry,
            transport=transport,
        )

    return factory


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _cancel_executor(task: asyncio.Task[ExecutorResult]) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def _run_until_disconnect(
    request: Request, task: asyncio.Task[ExecutorResult]
) -> ExecutorResult | None:
    """
    Wait for the executor while watching the client connection.

    A client that goes away cancels the executor and None is returned. If
    the handler itself is cancelled (server shutdown) the executor is
    cancelled with it, so no further candidate is attempted.
    """
    watcher = asyncio.create_task(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _cancel_executor(task)
        raise
    finally:
        watcher.cancel()
    if task in done:
        return task.result()
    await _cancel_executor(task)
    return None


def create_app(
    snapshot: ConfigSnapshot,
    *,
    request_log: RequestLog | None = None,
    policy: FailoverPolicy | None = None,
    attempt_factory: AttemptFactory | None = None,
    registry: ConnectionRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the proxy listener for one session's frozen snapshot.

    Every POST is treated as one CLI API call and handed to its own
    FailoverExecutor. `attempt_factory` and `transport` replace the real
    upstream call in tests.
    """
    app = FastAPI(title="cligate", version="0.1.0")
    app.state.snapshot = snapshot
    if request_log is None:
        request_log = RequestLog(
            max_entries=settings.request_log_max_entries,
            file_path=settings.request_log_file,
        )
    app.state.request_log = request_log
    app.state.registry = registry if registry is not None else ConnectionRegistry()
    app.state.policy = policy if policy is not None else FailoverPolicy.from_settings()
    if attempt_factory is None:
        attempt_factory = _http_attempt_factory(app.state.registry, transport)
    app.state.attempt_factory = attempt_factory
    cli_family = snapshot.cli_family

    @app.exception_handler(HTTPException)
    async def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict) and {"error", "message", "code"} <= exc.detail.keys():
            payload = ErrorResponse.model_validate(exc.detail)
        else:
            payload = ErrorResponse(
                error="http_error", message=str(exc.detail), code=exc.status_code
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=render_cli_error(cli_family, payload),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled error while processing %s %s", request.method, request.url.path
        )
        payload = ErrorResponse(
            error="internal_error",
            message="Internal proxy error",
            code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=render_cli_error(cli_family, payload),
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        logger.debug(
            "HTTP %s %s headers=%s",
            request.method,
            request.url.path,
            sanitize_headers_for_log(request.headers),
        )
        response = await call_next(request)
        logger.info(
            "HTTP %s %s -> %s (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.get("/_cligate/logs", response_model=RequestLogResponse)
    async def request_logs(
        provider: Optional[str] = None,
        outcome: Optional[str] = None,
        errors_only: bool = False,
        status_min: Optional[int] = None,
        status_max: Optional[int] = None,
        limit: int = Query(100, ge=1, le=10000),
    ) -> RequestLogResponse:
        log_filter = LogFilter(
            provider=provider,
            outcome=outcome,
            errors_only=errors_only,
            status_min=status_min,
            status_max=status_max,
            limit=limit,
        )
        return RequestLogResponse(entries=app.state.request_log.query(log_filter))

    @app.post("/{path:path}")
    async def proxy(path: str, request: Request) -> Response:
        raw_body = await request.body()
        try:
            payload = json.loads(raw_body or b"null")
        except ValueError:
            raise bad_request("Request body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise bad_request("Request body must be a JSON object")

        request_id = uuid.uuid4().hex[:12]
        profile = snapshot.profile
        scenario = classify(profile, payload)
        try:
            entries = chain_builder.build(profile, scenario)
            candidates = chain_builder.resolve_chain(
                snapshot,
                entries,
                requested_model=payload.get("model"),
                thinking=thinking_requested(payload),
            )
        except ConfigurationError as exc:
            logger.error("routing: request=%s configuration error: %s", request_id, exc)
            raise configuration_error(str(exc)) from exc

        logger.info(
            "routing: request=%s path=/%s model=%s scenario=%s chain=%s",
            request_id,
            path,
            payload.get("model"),
            scenario.value if scenario else None,
            [c.provider_id for c in candidates],
        )

        attempt = app.state.attempt_factory(
            cli_family=cli_family,
            payload=payload,
            path="/" + path,
            query=request.url.query,
            client_headers=request.headers,
        )
        executor = FailoverExecutor(
            candidates,
            attempt,
            request_id=request_id,
            scenario=scenario,
            policy=app.state.policy,
            request_log=app.state.request_log,
        )
        task = asyncio.create_task(executor.run())
        result = await _run_until_disconnect(request, task)
        if result is None:
            logger.info("routing: request=%s cancelled by client disconnect", request_id)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        if result.exhausted:
            raise failover_exhausted(len(result.attempts))

        upstream = result.response
        return StreamingResponse(
            result.stream(),
            status_code=upstream.status_code,
            media_type=upstream.media_type,
            headers=upstream.headers,
        )

    return app


__all__ = ["AttemptFactory", "create_app"]
