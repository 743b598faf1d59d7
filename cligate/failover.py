"""
Failover executor.

One executor walks one request's candidate chain:

    PENDING -> ATTEMPTING(i) -> FAILED(i) -> ATTEMPTING(i+1) ... -> EXHAUSTED -> DONE
                             \\-> STREAMING(i) -> DONE

Failover happens only before a response is accepted. Once STREAMING is
entered the chosen candidate's bytes are relayed as they come, errors
included, and no other candidate is contacted. Cancellation from any
non-terminal state ends in CANCELLED and releases the open upstream.

The upstream call is injected as an `Attempt` callable so the state
machine can be driven without network I/O.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from cligate.log_sanitizer import MAX_LOGGED_BODY_CHARS, truncate_for_log
from cligate.logging_config import logger
from cligate.models.profile import Scenario
from cligate.provider.config import default_retryable_status_codes
from cligate.request_log import RequestLog
from cligate.routing.chain import Candidate
from cligate.settings import settings
from cligate.upstream import OutcomeClass, UpstreamAttemptError, UpstreamResponse

Attempt = Callable[[Candidate], Awaitable[UpstreamResponse]]


class ExecutorState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    FAILED = "failed"
    STREAMING = "streaming"
    EXHAUSTED = "exhausted"
    DONE = "done"
    CANCELLED = "cancelled"


class ExecutorEvent(str, Enum):
    NEXT = "next"  # start the next attempt, or give up when none is left
    PRE_STREAM_FAILURE = "pre_stream_failure"
    RESPONSE_ACCEPTED = "response_accepted"
    FINISHED = "finished"
    CANCEL = "cancel"


@dataclass(frozen=True)
class ExecutorStatus:
    state: ExecutorState
    index: int | None = None

    def __str__(self) -> str:
        if self.index is None:
            return self.state.value
        return f"{self.state.value}({self.index})"


class InvalidTransition(RuntimeError):
    pass


_TERMINAL = (ExecutorState.DONE, ExecutorState.CANCELLED)


def transition(status: ExecutorStatus, event: ExecutorEvent, *, has_next: bool = False) -> ExecutorStatus:
    """
    Pure transition function of the executor state machine.

    `has_next` tells NEXT whether another candidate may still be tried
    (chain not exhausted and attempt budget left).
    """
    state = status.state
    if event is ExecutorEvent.CANCEL and state not in _TERMINAL:
        return ExecutorStatus(ExecutorState.CANCELLED, status.index)

    if event is ExecutorEvent.NEXT and state in (ExecutorState.PENDING, ExecutorState.FAILED):
        if not has_next:
            return ExecutorStatus(ExecutorState.EXHAUSTED)
        next_index = 0 if state is ExecutorState.PENDING else (status.index or 0) + 1
        return ExecutorStatus(ExecutorState.ATTEMPTING, next_index)

    if state is ExecutorState.ATTEMPTING:
        if event is ExecutorEvent.PRE_STREAM_FAILURE:
            return ExecutorStatus(ExecutorState.FAILED, status.index)
        if event is ExecutorEvent.RESPONSE_ACCEPTED:
            return ExecutorStatus(ExecutorState.STREAMING, status.index)

    if event is ExecutorEvent.FINISHED and state in (ExecutorState.STREAMING, ExecutorState.EXHAUSTED):
        return ExecutorStatus(ExecutorState.DONE, status.index)

    raise InvalidTransition(f"no transition from {status} on {event.value}")


@dataclass(frozen=True)
class FailoverPolicy:
    retryable_status_codes: frozenset[int]
    attempt_timeout: float | None = None
    max_attempts: int | None = None
    translation_failures_consume_attempts: bool = True

    @classmethod
    def from_settings(cls) -> "FailoverPolicy":
        return cls(
            retryable_status_codes=frozenset(default_retryable_status_codes()),
            attempt_timeout=settings.attempt_timeout_seconds or None,
            max_attempts=settings.max_failover_attempts,
            translation_failures_consume_attempts=settings.translation_failures_consume_attempts,
        )

    def is_retryable_status(self, candidate: Candidate, status_code: int) -> bool:
        override = candidate.provider.retryable_status_codes
        codes = override if override is not None else self.retryable_status_codes
        return status_code in codes


async def _drain_error_text(response: UpstreamResponse) -> str:
    try:
        return await response.aread_text(limit=MAX_LOGGED_BODY_CHARS)
    except Exception as exc:  # noqa: BLE001
        # The body only feeds the request log; the status already decided.
        return f"<error body unreadable: {exc!r}>"
    finally:
        await response.aclose()


@dataclass
class AttemptRecord:
    candidate: Candidate
    outcome: OutcomeClass
    latency_ms: float
    status_code: int | None = None
    detail: str | None = None


@dataclass
class ExecutorResult:
    """What the listener relays: an accepted response or an exhausted chain."""

    executor: "FailoverExecutor"
    candidate: Candidate | None = None
    response: UpstreamResponse | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.response is None

    def stream(self) -> AsyncIterator[bytes]:
        if self.response is None:
            raise RuntimeError("an exhausted result has no body to stream")
        return self.executor.relay(self.response)


class FailoverExecutor:
    def __init__(
        self,
        chain: Sequence[Candidate],
        attempt: Attempt,
        *,
        request_id: str,
        scenario: Scenario | None = None,
        policy: FailoverPolicy | None = None,
        request_log: RequestLog | None = None,
    ) -> None:
        self.chain = tuple(chain)
        self._attempt = attempt
        self.request_id = request_id
        self.scenario = scenario
        self.policy = policy if policy is not None else FailoverPolicy.from_settings()
        self.request_log = request_log
        self.status = ExecutorStatus(ExecutorState.PENDING)
        self.history: list[ExecutorStatus] = []
        self.attempts: list[AttemptRecord] = []
        self._budget_used = 0

    def _advance(self, event: ExecutorEvent, *, has_next: bool = False) -> ExecutorStatus:
        new_status = transition(self.status, event, has_next=has_next)
        logger.debug(
            "failover: request=%s %s -> %s", self.request_id, self.status, new_status
        )
        self.status = new_status
        self.history.append(new_status)
        return new_status

    def _has_next(self) -> bool:
        next_index = 0 if self.status.state is ExecutorState.PENDING else (self.status.index or 0) + 1
        if next_index >= len(self.chain):
            return False
        max_attempts = self.policy.max_attempts
        return max_attempts is None or self._budget_used < max_attempts

    def _record(
        self,
        candidate: Candidate,
        outcome: OutcomeClass,
        started: float,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        record = AttemptRecord(
            candidate=candidate,
            outcome=outcome,
            latency_ms=round((time.monotonic() - started) * 1000, 2),
            status_code=status_code,
            detail=truncate_for_log(detail),
        )
        self.attempts.append(record)
        if self.request_log is None:
            return
        self.request_log.record(
            request_id=self.request_id,
            provider_id=candidate.provider_id,
            model=candidate.model,
            scenario=self.scenario.value if self.scenario else None,
            outcome=outcome.value,
            latency_ms=record.latency_ms,
            status_code=status_code,
            detail=record.detail,
        )

    def _fail(
        self,
        candidate: Candidate,
        outcome: OutcomeClass,
        started: float,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        self._advance(ExecutorEvent.PRE_STREAM_FAILURE)
        if not outcome.is_translation_failure or self.policy.translation_failures_consume_attempts:
            self._budget_used += 1
        self._record(candidate, outcome, started, status_code=status_code, detail=detail)
        logger.warning(
            "failover: request=%s candidate %d/%d (%s) failed: %s status=%s %s",
            self.request_id,
            candidate.index + 1,
            len(self.chain),
            candidate.provider_id,
            outcome.value,
            status_code,
            truncate_for_log(detail) or "",
        )

    async def _call(self, candidate: Candidate) -> UpstreamResponse:
        timeout = self.policy.attempt_timeout
        if timeout is None:
            return await self._attempt(candidate)
        return await asyncio.wait_for(self._attempt(candidate), timeout)

    async def run(self) -> ExecutorResult:
        """
        Walk the chain until a response is accepted or no candidate is left.
        """
        self._advance(ExecutorEvent.NEXT, has_next=self._has_next())
        while self.status.state is ExecutorState.ATTEMPTING:
            candidate = self.chain[self.status.index or 0]
            started = time.monotonic()
            response: UpstreamResponse | None = None
            try:
                response = await self._call(candidate)
                if self.policy.is_retryable_status(candidate, response.status_code):
                    text = await _drain_error_text(response)
                    self._fail(
                        candidate,
                        OutcomeClass.RETRYABLE_STATUS,
                        started,
                        status_code=response.status_code,
                        detail=text,
                    )
                else:
                    self._advance(ExecutorEvent.RESPONSE_ACCEPTED)
                    outcome = (
                        OutcomeClass.SUCCESS
                        if response.status_code < 400
                        else OutcomeClass.UPSTREAM_ERROR
                    )
                    self._record(candidate, outcome, started, status_code=response.status_code)
                    logger.info(
                        "failover: request=%s streaming from %s (candidate %d/%d, status=%s)",
                        self.request_id,
                        candidate.provider_id,
                        candidate.index + 1,
                        len(self.chain),
                        response.status_code,
                    )
                    return ExecutorResult(
                        executor=self,
                        candidate=candidate,
                        response=response,
                        attempts=list(self.attempts),
                    )
            except asyncio.CancelledError:
                if response is not None:
                    await response.aclose()
                self._advance(ExecutorEvent.CANCEL)
                self._record(candidate, OutcomeClass.CANCELLED, started)
                raise
            except asyncio.TimeoutError:
                self._fail(
                    candidate,
                    OutcomeClass.TIMEOUT,
                    started,
                    detail=f"no response within {self.policy.attempt_timeout}s",
                )
            except UpstreamAttemptError as exc:
                self._fail(
                    candidate,
                    exc.outcome,
                    started,
                    status_code=exc.status_code,
                    detail=exc.text or str(exc),
                )

            self._advance(ExecutorEvent.NEXT, has_next=self._has_next())

        if self.status.state is ExecutorState.FAILED:
            self._advance(ExecutorEvent.NEXT, has_next=False)
        self._advance(ExecutorEvent.FINISHED)
        logger.warning(
            "failover: request=%s exhausted after %d attempt(s)",
            self.request_id,
            len(self.attempts),
        )
        return ExecutorResult(executor=self, attempts=list(self.attempts))

    async def relay(self, response: UpstreamResponse) -> AsyncIterator[bytes]:
        """
        Yield the accepted response body as-is. Errors raised by the body
        propagate to the caller; no other candidate is tried.
        """
        cancelled = False
        try:
            async for chunk in response.body:
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            cancelled = True
            raise
        finally:
            await response.aclose()
            if self.status.state is ExecutorState.STREAMING:
                self._advance(ExecutorEvent.CANCEL if cancelled else ExecutorEvent.FINISHED)


__all__ = [
    "Attempt",
    "AttemptRecord",
    "ExecutorEvent",
    "ExecutorResult",
    "ExecutorState",
    "ExecutorStatus",
    "FailoverExecutor",
    "FailoverPolicy",
    "InvalidTransition",
    "transition",
]
