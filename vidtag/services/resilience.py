from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from threading import Lock
from typing import Literal, TypeVar

from vidtag.services.collaborators import CollaboratorError
from vidtag.telemetry import TelemetryClient

LOGGER = logging.getLogger("vidtag.resilience")

T = TypeVar("T")

CircuitStateName = Literal["closed", "open", "half_open"]

_INTEGER_POLICY_FIELDS: frozenset[str] = frozenset({"sliding_window_size", "retry_attempts"})


@dataclass(frozen=True)
class ResiliencePolicy:
    failure_rate_threshold: float = 0.5
    sliding_window_size: int = 10
    open_wait_seconds: float = 30.0
    retry_attempts: int = 3
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    def with_overrides(self, overrides: Mapping[str, float]) -> ResiliencePolicy:
        if not overrides:
            return self
        updates: dict[str, float | int] = {}
        for key, value in overrides.items():
            updates[key] = int(value) if key in _INTEGER_POLICY_FIELDS else float(value)
        return replace(self, **updates)  # type: ignore[arg-type]

    def backoff_before_attempt(self, attempt: int) -> float:
        """Wait before attempt `attempt` (1-based); the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        return self.backoff_initial_seconds * (self.backoff_multiplier ** (attempt - 2))


class ResilienceError(Exception):
    def __init__(self, message: str, *, call_site: str | None = None) -> None:
        super().__init__(message)
        self.call_site = call_site


class CircuitOpenError(ResilienceError):
    def __init__(self, call_site: str, *, retry_after_seconds: int) -> None:
        super().__init__(
            f"circuit for {call_site} is open; retry after {retry_after_seconds}s",
            call_site=call_site,
        )
        self.retry_after_seconds = retry_after_seconds


class OperationFailedError(ResilienceError):
    def __init__(self, call_site: str, *, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"{call_site} failed after {attempts} attempt(s): {_describe(cause)}",
            call_site=call_site,
        )
        self.attempts = attempts
        self.cause = cause


class InvalidInputError(ResilienceError):
    pass


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, InvalidInputError):
        return False
    if isinstance(exc, CollaboratorError):
        return exc.retryable
    return True


@dataclass(frozen=True)
class CircuitSnapshot:
    call_site: str
    state: CircuitStateName
    window_size: int
    window_capacity: int
    failure_count: int
    failure_rate: float
    retry_after_seconds: int


@dataclass(frozen=True)
class _Transition:
    call_site: str
    from_state: CircuitStateName
    to_state: CircuitStateName


class _CircuitRecord:
    def __init__(self, call_site: str, policy: ResiliencePolicy) -> None:
        self.call_site = call_site
        self.policy = policy
        self.lock = Lock()
        self.state: CircuitStateName = "closed"
        # True marks a failed call.
        self.window: deque[bool] = deque(maxlen=policy.sliding_window_size)
        self.open_until = 0.0
        self.trial_in_flight = False

    def failure_count(self) -> int:
        return sum(1 for failed in self.window if failed)

    def failure_rate(self) -> float:
        if not self.window:
            return 0.0
        return self.failure_count() / len(self.window)

    def window_full(self) -> bool:
        return len(self.window) >= self.policy.sliding_window_size


class CircuitBreakerRegistry:
    """
    Process-wide map of call-site id to circuit record.

    The registry lock only guards record creation; every state read or mutation happens under
    the record's own lock so unrelated call-sites never contend.
    """

    def __init__(
        self,
        *,
        default_policy: ResiliencePolicy | None = None,
        overrides: Mapping[str, Mapping[str, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_policy = default_policy if default_policy is not None else ResiliencePolicy()
        self._overrides = {key: dict(value) for key, value in (overrides or {}).items()}
        self._clock = clock
        self._lock = Lock()
        self._records: dict[str, _CircuitRecord] = {}

    def policy_for(self, call_site: str) -> ResiliencePolicy:
        return self._default_policy.with_overrides(self._overrides.get(call_site, {}))

    def record_for(self, call_site: str) -> _CircuitRecord:
        record = self._records.get(call_site)
        if record is not None:
            return record
        with self._lock:
            record = self._records.get(call_site)
            if record is None:
                record = _CircuitRecord(call_site, self.policy_for(call_site))
                self._records[call_site] = record
            return record

    def now(self) -> float:
        return self._clock()

    def snapshot(self) -> list[CircuitSnapshot]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda item: item.call_site)

        now = self._clock()
        snapshots: list[CircuitSnapshot] = []
        for record in records:
            with record.lock:
                retry_after = 0
                if record.state == "open":
                    retry_after = max(0, math.ceil(record.open_until - now))
                snapshots.append(
                    CircuitSnapshot(
                        call_site=record.call_site,
                        state=record.state,
                        window_size=len(record.window),
                        window_capacity=record.policy.sliding_window_size,
                        failure_count=record.failure_count(),
                        failure_rate=round(record.failure_rate(), 4),
                        retry_after_seconds=retry_after,
                    )
                )
        return snapshots


class ResilientCall:
    """Circuit breaker plus bounded retry around a zero-argument collaborator call."""

    def __init__(
        self,
        registry: CircuitBreakerRegistry | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._registry = registry if registry is not None else CircuitBreakerRegistry()
        self._sleep = sleep
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    def invoke(self, call_site: str, operation: Callable[[], T]) -> T:
        record = self._registry.record_for(call_site)
        is_trial = self._acquire_permission(record)
        try:
            result = self._execute(record, operation)
        except Exception:
            # Non-transient failures skip the retries but still count against the circuit.
            self._record_outcome(record, failed=True, is_trial=is_trial)
            raise
        except BaseException:
            # Interrupted, not failed: free the trial slot without touching the window.
            self._release_trial(record, is_trial=is_trial)
            raise
        self._record_outcome(record, failed=False, is_trial=is_trial)
        return result

    def _acquire_permission(self, record: _CircuitRecord) -> bool:
        transition: _Transition | None = None
        with record.lock:
            now = self._registry.now()
            if record.state == "open":
                if now < record.open_until:
                    raise CircuitOpenError(
                        record.call_site,
                        retry_after_seconds=max(1, math.ceil(record.open_until - now)),
                    )
                record.state = "half_open"
                record.trial_in_flight = True
                transition = _Transition(record.call_site, "open", "half_open")
                is_trial = True
            elif record.state == "half_open":
                if record.trial_in_flight:
                    raise CircuitOpenError(record.call_site, retry_after_seconds=1)
                record.trial_in_flight = True
                is_trial = True
            else:
                is_trial = False

        if transition is not None:
            self._announce(transition)
        return is_trial

    def _execute(self, record: _CircuitRecord, operation: Callable[[], T]) -> T:
        policy = record.policy
        attempts = max(1, policy.retry_attempts)
        attempt = 0
        while True:
            attempt += 1
            wait_seconds = policy.backoff_before_attempt(attempt)
            if wait_seconds > 0:
                self._sleep(wait_seconds)
            try:
                return operation()
            except Exception as exc:
                if not is_transient(exc):
                    if isinstance(exc, InvalidInputError):
                        raise
                    raise InvalidInputError(
                        f"{record.call_site} rejected the request: {_describe(exc)}",
                        call_site=record.call_site,
                    ) from exc
                if attempt >= attempts:
                    raise OperationFailedError(
                        record.call_site,
                        attempts=attempt,
                        cause=exc,
                    ) from exc
                LOGGER.info(
                    "transient failure; retrying call_site=%s attempt=%s/%s error_type=%s",
                    record.call_site,
                    attempt,
                    attempts,
                    type(exc).__name__,
                )

    def _release_trial(self, record: _CircuitRecord, *, is_trial: bool) -> None:
        if not is_trial:
            return
        with record.lock:
            record.trial_in_flight = False

    def _record_outcome(self, record: _CircuitRecord, *, failed: bool, is_trial: bool) -> None:
        transition: _Transition | None = None
        with record.lock:
            now = self._registry.now()
            if is_trial:
                record.trial_in_flight = False
                if failed:
                    record.window.append(True)
                    record.state = "open"
                    record.open_until = now + record.policy.open_wait_seconds
                    transition = _Transition(record.call_site, "half_open", "open")
                else:
                    record.window.clear()
                    record.state = "closed"
                    transition = _Transition(record.call_site, "half_open", "closed")
            else:
                record.window.append(failed)
                if (
                    record.state == "closed"
                    and record.window_full()
                    and record.failure_rate() >= record.policy.failure_rate_threshold
                ):
                    record.state = "open"
                    record.open_until = now + record.policy.open_wait_seconds
                    transition = _Transition(record.call_site, "closed", "open")

        if transition is not None:
            self._announce(transition)

    def _announce(self, transition: _Transition) -> None:
        log_method = LOGGER.warning if transition.to_state == "open" else LOGGER.info
        log_method(
            "circuit transition call_site=%s from=%s to=%s",
            transition.call_site,
            transition.from_state,
            transition.to_state,
        )
        self._telemetry.emit(
            "resilience.circuit.transition",
            call_site=transition.call_site,
            from_state=transition.from_state,
            to_state=transition.to_state,
        )


def _describe(exc: BaseException) -> str:
    message = " ".join(str(exc).split())
    if not message:
        return type(exc).__name__
    if len(message) > 200:
        message = f"{message[:200]}..."
    return f"{type(exc).__name__}: {message}"
