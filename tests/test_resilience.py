from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

import pytest

from vidtag.services.collaborators import CollaboratorError
from vidtag.services.resilience import (
    CircuitBreakerRegistry,
    CircuitOpenError,
    InvalidInputError,
    OperationFailedError,
    ResiliencePolicy,
    ResilientCall,
)
from vidtag.telemetry import TelemetryClient


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _RecordingSleep:
    def __init__(self) -> None:
        self.waits: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


class _FlakyOperation:
    def __init__(self, failures: int, result: str = "ok") -> None:
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise CollaboratorError("upstream timeout", service="test")
        return self.result


def _always_fail() -> str:
    raise CollaboratorError("upstream down", service="test")


def _build(
    *,
    policy: ResiliencePolicy | None = None,
    overrides: Mapping[str, Mapping[str, float]] | None = None,
    telemetry: TelemetryClient | None = None,
) -> tuple[ResilientCall, _FakeClock, _RecordingSleep]:
    clock = _FakeClock()
    sleep = _RecordingSleep()
    registry = CircuitBreakerRegistry(default_policy=policy, overrides=overrides, clock=clock)
    return ResilientCall(registry, sleep=sleep, telemetry=telemetry), clock, sleep


def test_retry_succeeds_after_two_failures_with_exponential_waits() -> None:
    resilient_call, _, sleep = _build()
    operation = _FlakyOperation(failures=2, result="fetched")

    assert resilient_call.invoke("youtube.fetch_items", operation) == "fetched"
    assert operation.calls == 3
    assert sleep.waits == [1.0, 2.0]


def test_first_attempt_success_never_waits() -> None:
    resilient_call, _, sleep = _build()

    assert resilient_call.invoke("raindrop.exists", lambda: True) is True
    assert sleep.waits == []


def test_exhausted_retries_raise_operation_failed() -> None:
    resilient_call, _, sleep = _build()

    with pytest.raises(OperationFailedError) as exc_info:
        resilient_call.invoke("claude.suggest_tags", _always_fail)

    assert exc_info.value.attempts == 3
    assert exc_info.value.call_site == "claude.suggest_tags"
    assert isinstance(exc_info.value.cause, CollaboratorError)
    assert sleep.waits == [1.0, 2.0]


def test_non_retryable_error_is_not_retried() -> None:
    resilient_call, _, sleep = _build()
    calls: list[int] = []

    def _rejected() -> None:
        calls.append(1)
        raise CollaboratorError("bad request", service="test", status_code=400, retryable=False)

    with pytest.raises(InvalidInputError):
        resilient_call.invoke("raindrop.write", _rejected)

    assert calls == [1]
    assert sleep.waits == []


def test_non_retryable_failures_trip_the_circuit() -> None:
    resilient_call, _, sleep = _build()
    calls: list[int] = []

    def _forbidden() -> None:
        calls.append(1)
        raise CollaboratorError(
            "token revoked", service="raindrop", status_code=403, retryable=False
        )

    for _ in range(10):
        with pytest.raises(InvalidInputError):
            resilient_call.invoke("raindrop.write", _forbidden)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "open"
    assert snapshot.failure_count == 10
    assert sleep.waits == []

    with pytest.raises(CircuitOpenError):
        resilient_call.invoke("raindrop.write", _forbidden)
    assert len(calls) == 10


def test_circuit_opens_when_half_of_a_full_window_failed() -> None:
    resilient_call, _, _ = _build(policy=ResiliencePolicy(retry_attempts=1))

    for _ in range(5):
        assert resilient_call.invoke("raindrop.exists", lambda: False) is False
    for _ in range(4):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("raindrop.exists", _always_fail)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "closed"
    assert snapshot.window_size == 9

    with pytest.raises(OperationFailedError):
        resilient_call.invoke("raindrop.exists", _always_fail)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "open"
    assert snapshot.failure_count == 5
    assert snapshot.retry_after_seconds == 30


def test_circuit_does_not_open_before_window_is_full() -> None:
    resilient_call, _, _ = _build(policy=ResiliencePolicy(retry_attempts=1))

    for _ in range(9):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("raindrop.write", _always_fail)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "closed"
    assert snapshot.failure_rate == 1.0


def test_open_circuit_fails_fast_without_calling_operation() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("claude.suggest_tags", _always_fail)

    operation = _FlakyOperation(failures=0)
    clock.advance(12.2)
    with pytest.raises(CircuitOpenError) as exc_info:
        resilient_call.invoke("claude.suggest_tags", operation)

    assert operation.calls == 0
    assert exc_info.value.retry_after_seconds == 18


def test_half_open_trial_success_closes_circuit() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("youtube.fetch_items", _always_fail)

    clock.advance(30)
    assert resilient_call.invoke("youtube.fetch_items", lambda: "recovered") == "recovered"

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "closed"
    assert snapshot.window_size == 0


def test_half_open_trial_failure_reopens_circuit() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("youtube.fetch_items", _always_fail)

    clock.advance(31)
    with pytest.raises(OperationFailedError):
        resilient_call.invoke("youtube.fetch_items", _always_fail)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "open"
    assert snapshot.retry_after_seconds == 30


def test_half_open_trial_rejected_as_invalid_reopens_circuit() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("youtube.fetch_items", _always_fail)

    def _quota_exhausted() -> None:
        raise CollaboratorError(
            "quotaExceeded", service="youtube", status_code=403, retryable=False
        )

    clock.advance(31)
    with pytest.raises(InvalidInputError):
        resilient_call.invoke("youtube.fetch_items", _quota_exhausted)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "open"
    assert snapshot.retry_after_seconds == 30


def test_interrupted_trial_frees_the_trial_slot() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("raindrop.exists", _always_fail)
    clock.advance(30)

    def _interrupted() -> bool:
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        resilient_call.invoke("raindrop.exists", _interrupted)

    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "half_open"
    assert snapshot.failure_count == 10
    assert resilient_call.invoke("raindrop.exists", lambda: True) is True
    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "closed"


def test_half_open_allows_a_single_trial_call() -> None:
    resilient_call, clock, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("raindrop.write", _always_fail)
    clock.advance(30)

    trial_started = threading.Event()
    release_trial = threading.Event()
    results: list[str] = []

    def _slow_trial() -> str:
        trial_started.set()
        release_trial.wait(timeout=5)
        return "trial-ok"

    worker = threading.Thread(
        target=lambda: results.append(resilient_call.invoke("raindrop.write", _slow_trial))
    )
    worker.start()
    assert trial_started.wait(timeout=5)

    with pytest.raises(CircuitOpenError) as exc_info:
        resilient_call.invoke("raindrop.write", lambda: "concurrent")
    assert exc_info.value.retry_after_seconds == 1

    release_trial.set()
    worker.join(timeout=5)
    assert results == ["trial-ok"]
    [snapshot] = resilient_call.registry.snapshot()
    assert snapshot.state == "closed"


def test_call_sites_have_independent_circuits() -> None:
    resilient_call, _, _ = _build(policy=ResiliencePolicy(retry_attempts=1))
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("claude.suggest_tags", _always_fail)

    assert resilient_call.invoke("raindrop.exists", lambda: True) is True
    states = {snapshot.call_site: snapshot.state for snapshot in resilient_call.registry.snapshot()}
    assert states == {"claude.suggest_tags": "open", "raindrop.exists": "closed"}


def test_per_call_site_overrides_apply() -> None:
    resilient_call, _, sleep = _build(
        overrides={"youtube.fetch_items": {"retry_attempts": 5, "backoff_initial_seconds": 0.5}},
    )
    operation = _FlakyOperation(failures=4)

    assert resilient_call.invoke("youtube.fetch_items", operation) == "ok"
    assert sleep.waits == [0.5, 1.0, 2.0, 4.0]
    assert resilient_call.registry.policy_for("raindrop.write").retry_attempts == 3


def test_circuit_transitions_emit_telemetry() -> None:
    sink = _CaptureSink()
    resilient_call, clock, _ = _build(
        policy=ResiliencePolicy(retry_attempts=1),
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )
    for _ in range(10):
        with pytest.raises(OperationFailedError):
            resilient_call.invoke("raindrop.exists", _always_fail)
    clock.advance(30)
    resilient_call.invoke("raindrop.exists", lambda: True)

    transitions = [
        (attributes["from_state"], attributes["to_state"])
        for name, attributes in sink.events
        if name == "resilience.circuit.transition"
    ]
    assert transitions == [("closed", "open"), ("open", "half_open"), ("half_open", "closed")]


def test_unexpected_exceptions_are_treated_as_transient() -> None:
    resilient_call, _, sleep = _build()
    operation_calls: list[int] = []

    def _broken() -> None:
        operation_calls.append(1)
        raise KeyError("items")

    with pytest.raises(OperationFailedError) as exc_info:
        resilient_call.invoke("youtube.fetch_items", _broken)

    assert len(operation_calls) == 3
    assert "KeyError" in str(exc_info.value)
    assert sleep.waits == [1.0, 2.0]


def test_backoff_schedule() -> None:
    policy = ResiliencePolicy(backoff_initial_seconds=1.0, backoff_multiplier=2.0)

    assert [policy.backoff_before_attempt(attempt) for attempt in range(1, 5)] == [
        0.0,
        1.0,
        2.0,
        4.0,
    ]
