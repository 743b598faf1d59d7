from __future__ import annotations

import asyncio

import pytest

from cligate.failover import (
    ExecutorEvent,
    ExecutorState,
    ExecutorStatus,
    FailoverExecutor,
    FailoverPolicy,
    InvalidTransition,
    transition,
)
from cligate.models import Scenario
from cligate.request_log import RequestLog
from cligate.routing.chain import Candidate
from cligate.upstream import OutcomeClass, UpstreamAttemptError, UpstreamResponse

RETRYABLE = frozenset([401, 402, 403, 408, 429, *range(500, 600)])


def _policy(**overrides) -> FailoverPolicy:
    return FailoverPolicy(retryable_status_codes=RETRYABLE, **overrides)


async def _body(chunks):
    for chunk in chunks:
        yield chunk


class ScriptedAttempt:
    """
    Fake attempt: each provider id maps to what its attempt does, either an
    HTTP status (answered with `b"<id>:<status>"`), an exception to raise,
    or "hang" to block until cancelled.
    """

    def __init__(self, script: dict, *, stream_chunks: dict | None = None):
        self.script = script
        self.stream_chunks = stream_chunks or {}
        self.calls: list[str] = []
        self.responses: list[UpstreamResponse] = []

    async def __call__(self, candidate: Candidate) -> UpstreamResponse:
        self.calls.append(candidate.provider_id)
        action = self.script[candidate.provider_id]
        if action == "hang":
            await asyncio.sleep(3600)
        if isinstance(action, BaseException):
            raise action
        chunks = self.stream_chunks.get(
            candidate.provider_id, [f"{candidate.provider_id}:{action}".encode()]
        )

        async def _close() -> None:
            return None

        response = UpstreamResponse(status_code=action, body=_body(chunks), close=_close)
        self.responses.append(response)
        return response


def _chain(make_provider, *ids: str, **provider_overrides) -> list[Candidate]:
    return [
        Candidate(index=i, provider=make_provider(pid, **provider_overrides.get(pid, {})), model="m")
        for i, pid in enumerate(ids)
    ]


async def _drain(result) -> bytes:
    return b"".join([chunk async for chunk in result.stream()])


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def test_transition_happy_path():
    status = ExecutorStatus(ExecutorState.PENDING)
    status = transition(status, ExecutorEvent.NEXT, has_next=True)
    assert status == ExecutorStatus(ExecutorState.ATTEMPTING, 0)
    status = transition(status, ExecutorEvent.PRE_STREAM_FAILURE)
    assert status == ExecutorStatus(ExecutorState.FAILED, 0)
    status = transition(status, ExecutorEvent.NEXT, has_next=True)
    assert status == ExecutorStatus(ExecutorState.ATTEMPTING, 1)
    status = transition(status, ExecutorEvent.RESPONSE_ACCEPTED)
    assert str(status) == "streaming(1)"
    assert transition(status, ExecutorEvent.FINISHED).state is ExecutorState.DONE


def test_transition_exhaustion_and_cancel():
    failed = ExecutorStatus(ExecutorState.FAILED, 2)
    exhausted = transition(failed, ExecutorEvent.NEXT, has_next=False)
    assert exhausted.state is ExecutorState.EXHAUSTED
    assert transition(exhausted, ExecutorEvent.FINISHED).state is ExecutorState.DONE
    assert transition(
        ExecutorStatus(ExecutorState.STREAMING, 0), ExecutorEvent.CANCEL
    ).state is ExecutorState.CANCELLED


@pytest.mark.parametrize(
    "status, event",
    [
        (ExecutorStatus(ExecutorState.STREAMING, 0), ExecutorEvent.PRE_STREAM_FAILURE),
        (ExecutorStatus(ExecutorState.STREAMING, 0), ExecutorEvent.NEXT),
        (ExecutorStatus(ExecutorState.DONE, 0), ExecutorEvent.CANCEL),
        (ExecutorStatus(ExecutorState.CANCELLED, 0), ExecutorEvent.NEXT),
        (ExecutorStatus(ExecutorState.PENDING), ExecutorEvent.RESPONSE_ACCEPTED),
    ],
)
def test_invalid_transitions_raise(status, event):
    with pytest.raises(InvalidTransition):
        transition(status, event, has_next=True)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fails_over_on_retryable_statuses_until_success(make_provider):
    attempt = ScriptedAttempt({"C": 503, "A": 503, "B": 200})
    log = RequestLog()
    executor = FailoverExecutor(
        _chain(make_provider, "C", "A", "B"),
        attempt,
        request_id="r1",
        scenario=Scenario.LONG_CONTEXT,
        policy=_policy(),
        request_log=log,
    )
    result = await executor.run()

    assert attempt.calls == ["C", "A", "B"]
    assert not result.exhausted
    assert result.candidate.provider_id == "B"
    assert await _drain(result) == b"B:200"
    assert executor.status.state is ExecutorState.DONE
    assert [a.outcome for a in result.attempts] == [
        OutcomeClass.RETRYABLE_STATUS,
        OutcomeClass.RETRYABLE_STATUS,
        OutcomeClass.SUCCESS,
    ]
    assert attempt.responses[0].closed and attempt.responses[1].closed

    entries = log.query()
    assert {e.provider_id for e in entries} == {"A", "B", "C"}
    assert all(e.scenario == "longContext" and e.request_id == "r1" for e in entries)
    assert [str(s) for s in executor.history] == [
        "attempting(0)",
        "failed(0)",
        "attempting(1)",
        "failed(1)",
        "attempting(2)",
        "streaming(2)",
        "done(2)",
    ]


@pytest.mark.asyncio
async def test_non_retryable_error_status_is_relayed_without_failover(make_provider):
    attempt = ScriptedAttempt({"A": 404, "B": 200})
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B"), attempt, request_id="r", policy=_policy()
    )
    result = await executor.run()
    assert attempt.calls == ["A"]
    assert result.response.status_code == 404
    assert result.attempts[0].outcome is OutcomeClass.UPSTREAM_ERROR
    assert await _drain(result) == b"A:404"


@pytest.mark.asyncio
async def test_every_candidate_tried_once_then_exhausted(make_provider):
    attempt = ScriptedAttempt(
        {
            "A": UpstreamAttemptError(outcome=OutcomeClass.CONNECT_ERROR, message="refused"),
            "B": 429,
            "C": UpstreamAttemptError(outcome=OutcomeClass.TRANSLATION_ERROR, message="no"),
        }
    )
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B", "C"), attempt, request_id="r", policy=_policy()
    )
    result = await executor.run()

    assert attempt.calls == ["A", "B", "C"]
    assert result.exhausted
    assert len(result.attempts) == 3
    assert executor.status.state is ExecutorState.DONE
    assert ExecutorState.EXHAUSTED in {s.state for s in executor.history}
    with pytest.raises(RuntimeError):
        result.stream()


@pytest.mark.asyncio
async def test_provider_retryable_override(make_provider):
    attempt = ScriptedAttempt({"A": 418, "B": 503, "C": 200})
    chain = _chain(
        make_provider,
        "A",
        "B",
        "C",
        A={"retryable_status_codes": [418]},
        B={"retryable_status_codes": [429]},
    )
    executor = FailoverExecutor(chain, attempt, request_id="r", policy=_policy())
    result = await executor.run()
    assert attempt.calls == ["A", "B"]
    assert result.response.status_code == 503


@pytest.mark.asyncio
async def test_attempt_timeout_fails_over(make_provider):
    attempt = ScriptedAttempt({"A": "hang", "B": 200})
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B"),
        attempt,
        request_id="r",
        policy=_policy(attempt_timeout=0.05),
    )
    result = await executor.run()
    assert attempt.calls == ["A", "B"]
    assert result.attempts[0].outcome is OutcomeClass.TIMEOUT
    assert result.candidate.provider_id == "B"


@pytest.mark.asyncio
async def test_max_attempts_budget(make_provider):
    attempt = ScriptedAttempt({"A": 500, "B": 500, "C": 200})
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B", "C"),
        attempt,
        request_id="r",
        policy=_policy(max_attempts=2),
    )
    result = await executor.run()
    assert attempt.calls == ["A", "B"]
    assert result.exhausted


@pytest.mark.asyncio
async def test_translation_failures_can_be_exempt_from_budget(make_provider):
    script = {
        "A": UpstreamAttemptError(outcome=OutcomeClass.TRANSLATION_ERROR, message="x"),
        "B": UpstreamAttemptError(outcome=OutcomeClass.CAPABILITY_MISMATCH, message="y"),
        "C": 200,
    }
    counted = ScriptedAttempt(dict(script))
    result = await FailoverExecutor(
        _chain(make_provider, "A", "B", "C"),
        counted,
        request_id="r",
        policy=_policy(max_attempts=1),
    ).run()
    assert counted.calls == ["A"]
    assert result.exhausted

    exempt = ScriptedAttempt(dict(script))
    result = await FailoverExecutor(
        _chain(make_provider, "A", "B", "C"),
        exempt,
        request_id="r",
        policy=_policy(max_attempts=1, translation_failures_consume_attempts=False),
    ).run()
    assert exempt.calls == ["A", "B", "C"]
    assert result.candidate.provider_id == "C"


@pytest.mark.asyncio
async def test_mid_stream_error_does_not_fail_over(make_provider):
    async def _broken():
        yield b"partial"
        raise ConnectionResetError("upstream went away")

    class BrokenStreamAttempt(ScriptedAttempt):
        async def __call__(self, candidate):
            self.calls.append(candidate.provider_id)
            return UpstreamResponse(status_code=200, body=_broken())

    attempt = BrokenStreamAttempt({})
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B"), attempt, request_id="r", policy=_policy()
    )
    result = await executor.run()

    received = []
    with pytest.raises(ConnectionResetError):
        async for chunk in result.stream():
            received.append(chunk)
    assert received == [b"partial"]
    assert attempt.calls == ["A"]
    assert executor.status.state is ExecutorState.DONE


@pytest.mark.asyncio
async def test_cancel_during_attempt_stops_the_walk(make_provider):
    attempt = ScriptedAttempt({"A": "hang", "B": 200})
    executor = FailoverExecutor(
        _chain(make_provider, "A", "B"), attempt, request_id="r", policy=_policy()
    )
    task = asyncio.create_task(executor.run())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert attempt.calls == ["A"]
    assert executor.status.state is ExecutorState.CANCELLED
    assert executor.attempts[-1].outcome is OutcomeClass.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_streaming_closes_the_response(make_provider):
    attempt = ScriptedAttempt({"A": 200}, stream_chunks={"A": [b"one", b"two", b"three"]})
    executor = FailoverExecutor(
        _chain(make_provider, "A"), attempt, request_id="r", policy=_policy()
    )
    result = await executor.run()
    stream = result.stream()
    assert await stream.__anext__() == b"one"
    await stream.aclose()

    assert attempt.responses[0].closed
    assert executor.status.state is ExecutorState.CANCELLED
