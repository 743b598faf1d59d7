from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

import httpx

from cligate.log_sanitizer import sanitize_headers_for_log, truncate_for_log
from cligate.logging_config import logger
from cligate.models.provider import CliFamily
from cligate.protocol.error_classifier import classify_capability_mismatch, extract_error_message
from cligate.protocol.stream_adapter import OPENAI_DONE, anthropic_error_event, openai_error_chunk
from cligate.protocol.translator import (
    build_upstream_request,
    translate_response_body,
    translate_stream,
)
from cligate.routing.chain import Candidate
from cligate.routing.exceptions import TranslationError
from cligate.settings import settings

# Upstream response headers worth relaying to the CLI.
_RELAYED_HEADERS = ("retry-after", "request-id", "x-request-id")


class OutcomeClass(str, Enum):
    """How one attempt ended, as recorded in the request log."""

    SUCCESS = "success"
    UPSTREAM_ERROR = "upstream_error"
    RETRYABLE_STATUS = "retryable_status"
    CONNECT_ERROR = "connect_error"
    TIMEOUT = "timeout"
    TRANSLATION_ERROR = "translation_error"
    CAPABILITY_MISMATCH = "capability_mismatch"
    CANCELLED = "cancelled"

    @property
    def is_translation_failure(self) -> bool:
        return self in (OutcomeClass.TRANSLATION_ERROR, OutcomeClass.CAPABILITY_MISMATCH)


class UpstreamAttemptError(Exception):
    """
    A candidate failed before any response byte was accepted.

    Raised by attempt implementations so the failover executor can move
    on to the next candidate.
    """

    def __init__(
        self,
        *,
        outcome: OutcomeClass,
        message: str,
        status_code: int | None = None,
        text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome
        self.status_code = status_code
        self.text = text


class UpstreamResponse:
    """
    A response whose status is known and whose body has not been consumed.

    `body` yields client-shape bytes. `aclose` releases the upstream
    connection and is safe to call more than once.
    """

    def __init__(
        self,
        *,
        status_code: int,
        body: AsyncIterator[bytes],
        media_type: str | None = None,
        headers: Mapping[str, str] | None = None,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.media_type = media_type
        self.headers = dict(headers or {})
        self._close = close
        self.closed = False

    async def aread_text(self, limit: int | None = None) -> str:
        buf = bytearray()
        async for chunk in self.body:
            buf.extend(chunk)
            if limit is not None and len(buf) >= limit:
                break
        return buf.decode("utf-8", errors="replace")

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        aclose_body = getattr(self.body, "aclose", None)
        try:
            if aclose_body is not None:
                await aclose_body()
        finally:
            if self._close is not None:
                await self._close()


async def _iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


class ConnectionRegistry:
    """Open upstream clients of one proxy session, for forced close on shutdown."""

    def __init__(self) -> None:
        self._clients: set[httpx.AsyncClient] = set()

    def add(self, client: httpx.AsyncClient) -> None:
        self._clients.add(client)

    def discard(self, client: httpx.AsyncClient) -> None:
        self._clients.discard(client)

    @property
    def open_count(self) -> int:
        return len(self._clients)

    async def aclose_all(self) -> None:
        clients = list(self._clients)
        self._clients.clear()
        for client in clients:
            await client.aclose()
        if clients:
            logger.warning("upstream: force-closed %d open upstream connection(s)", len(clients))


class HttpAttempt:
    """
    The real attempt: one httpx request per candidate, each on its own client.

    Non-streaming 2xx bodies are buffered and translated here, so a
    translation failure is still a pre-stream failure. Streaming bodies are
    translated chunk by chunk after the executor accepts the response.
    """

    def __init__(
        self,
        *,
        cli_family: CliFamily,
        payload: dict[str, Any],
        path: str,
        query: str = "",
        client_headers: Mapping[str, str] | None = None,
        registry: ConnectionRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cli_family = cli_family
        self.payload = payload
        self.path = path
        self.query = query
        self.client_headers = client_headers
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.transport = transport

    async def __call__(self, candidate: Candidate) -> UpstreamResponse:
        try:
            request = build_upstream_request(
                candidate,
                cli_family=self.cli_family,
                payload=self.payload,
                path=self.path,
                query=self.query,
                client_headers=self.client_headers,
            )
        except TranslationError as exc:
            raise UpstreamAttemptError(
                outcome=OutcomeClass.TRANSLATION_ERROR, message=str(exc)
            ) from exc

        logger.info(
            "upstream: %s -> %s %s (model=%s stream=%s)",
            candidate.provider_id,
            request.method,
            request.url,
            candidate.model,
            request.stream,
        )
        logger.debug("upstream: headers=%s", sanitize_headers_for_log(request.headers))

        client = httpx.AsyncClient(
            transport=self.transport,
            timeout=httpx.Timeout(settings.stream_read_timeout_seconds),
        )
        self.registry.add(client)

        async def _release() -> None:
            self.registry.discard(client)
            await client.aclose()

        try:
            resp = await client.send(
                client.build_request(
                    request.method, request.url, headers=request.headers, json=request.body
                ),
                stream=True,
            )
        except httpx.TimeoutException as exc:
            await _release()
            raise UpstreamAttemptError(
                outcome=OutcomeClass.TIMEOUT, message=f"timed out: {exc!r}"
            ) from exc
        except httpx.HTTPError as exc:
            await _release()
            raise UpstreamAttemptError(
                outcome=OutcomeClass.CONNECT_ERROR, message=f"transport error: {exc!r}"
            ) from exc
        except BaseException:
            await _release()
            raise

        async def _close() -> None:
            try:
                await resp.aclose()
            finally:
                await _release()

        try:
            return await self._accept(candidate, resp, request.stream, _close)
        except BaseException:
            await _close()
            raise

    async def _accept(
        self,
        candidate: Candidate,
        resp: httpx.Response,
        stream: bool,
        close: Callable[[], Awaitable[None]],
    ) -> UpstreamResponse:
        status_code = resp.status_code
        headers = {k: resp.headers[k] for k in _RELAYED_HEADERS if k in resp.headers}
        media_type = resp.headers.get("content-type")

        if status_code in (400, 422):
            text = (await resp.aread()).decode("utf-8", errors="replace")
            capability = classify_capability_mismatch(status_code, text)
            if capability:
                raise UpstreamAttemptError(
                    outcome=OutcomeClass.CAPABILITY_MISMATCH,
                    message=f"provider does not support {capability}: "
                    f"{truncate_for_log(extract_error_message(text))}",
                    status_code=status_code,
                    text=text,
                )
            await close()
            return UpstreamResponse(
                status_code=status_code,
                body=_iter_bytes(text.encode("utf-8")),
                media_type=media_type,
                headers=headers,
            )

        if not 200 <= status_code < 300:
            # Error bodies are relayed verbatim, or read by the executor when retryable.
            return UpstreamResponse(
                status_code=status_code,
                body=resp.aiter_bytes(),
                media_type=media_type,
                headers=headers,
                close=close,
            )

        if not stream:
            raw = await resp.aread()
            await close()
            try:
                translated = translate_response_body(
                    raw, candidate=candidate, cli_family=self.cli_family
                )
            except TranslationError as exc:
                raise UpstreamAttemptError(
                    outcome=OutcomeClass.TRANSLATION_ERROR,
                    message=str(exc),
                    status_code=status_code,
                    text=raw.decode("utf-8", errors="replace"),
                ) from exc
            return UpstreamResponse(
                status_code=status_code,
                body=_iter_bytes(translated),
                media_type="application/json",
                headers=headers,
            )

        body = translate_stream(
            resp.aiter_bytes(),
            candidate=candidate,
            cli_family=self.cli_family,
            request_model=self.payload.get("model"),
        )
        return UpstreamResponse(
            status_code=status_code,
            body=self._guard_stream(body, candidate),
            media_type="text/event-stream",
            headers=headers,
            close=close,
        )

    async def _guard_stream(
        self, body: AsyncIterator[bytes], candidate: Candidate
    ) -> AsyncIterator[bytes]:
        """
        Relay a streaming body. Once bytes have reached the client a failure
        can no longer fail over, so it ends the stream with an error event.
        """
        try:
            async for chunk in body:
                yield chunk
        except (httpx.HTTPError, TranslationError) as exc:
            logger.warning(
                "upstream: stream from %s failed after response start: %r",
                candidate.provider_id,
                exc,
            )
            message = f"Upstream stream interrupted: {exc}"
            if self.cli_family.wire_shape == "anthropic":
                yield anthropic_error_event("api_error", message)
            else:
                yield openai_error_chunk("upstream_error", message)
                yield OPENAI_DONE


__all__ = [
    "ConnectionRegistry",
    "HttpAttempt",
    "OutcomeClass",
    "UpstreamAttemptError",
    "UpstreamResponse",
]
