from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from typing import Protocol

from vidtag.models.run_models import ProgressEvent

LOGGER = logging.getLogger("vidtag.events")

_CONSUMER_POLL_SECONDS = 0.25


class EventStreamClosedError(RuntimeError):
    pass


class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None:
        ...

    def close(self) -> None:
        ...


class EventStream:
    """
    Bounded single-producer, single-consumer channel of progress events.

    `emit` waits at most `emit_timeout_seconds` for buffer space and then drops the event,
    counting it in `dropped_events`. After a drop, or once the consumer detaches, later events
    are dropped immediately so a missing reader never stalls the run. The first terminal event
    closes the stream; later emits are a producer bug and raise in strict mode.
    """

    def __init__(
        self,
        *,
        max_buffered_events: int = 256,
        emit_timeout_seconds: float = 5.0,
        strict: bool = False,
    ) -> None:
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=max(1, max_buffered_events))
        self._emit_timeout_seconds = max(0.0, emit_timeout_seconds)
        self._strict = strict
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._detached = threading.Event()
        self._lagging = threading.Event()
        self._dropped_events = 0
        self._emitted_events = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dropped_events(self) -> int:
        with self._lock:
            return self._dropped_events

    @property
    def emitted_events(self) -> int:
        with self._lock:
            return self._emitted_events

    def emit(self, event: ProgressEvent) -> None:
        if self._closed.is_set():
            if self._strict:
                raise EventStreamClosedError(
                    f"event emitted after the stream closed kind={event.kind} "
                    f"sequence={event.sequence}"
                )
            LOGGER.error(
                "ignoring event emitted after stream close kind=%s sequence=%s",
                event.kind,
                event.sequence,
            )
            return

        if self._detached.is_set():
            self._record_drop(event, reason="consumer detached")
        elif self._offer(event):
            with self._lock:
                self._emitted_events += 1
        else:
            self._record_drop(event, reason="buffer full")

        if event.terminal:
            self.close()

    def _offer(self, event: ProgressEvent) -> bool:
        # Once one event has timed out, further non-terminal events drop without waiting
        # until the consumer drains something.
        wait = self._emit_timeout_seconds
        if self._lagging.is_set() and not event.terminal:
            wait = 0.0
        try:
            if wait > 0:
                self._queue.put(event, timeout=wait)
            else:
                self._queue.put_nowait(event)
        except queue.Full:
            self._lagging.set()
            return False
        self._lagging.clear()
        return True

    def _record_drop(self, event: ProgressEvent, *, reason: str) -> None:
        with self._lock:
            self._dropped_events += 1
            dropped = self._dropped_events
        LOGGER.warning(
            "event stream dropped event reason=%s kind=%s sequence=%s dropped_total=%s",
            reason,
            event.kind,
            event.sequence,
            dropped,
        )

    def detach(self) -> None:
        """Mark the consumer as gone; later events are dropped without blocking the producer."""
        if not self._detached.is_set() and not self._closed.is_set():
            LOGGER.info("event stream consumer detached")
        self._detached.set()
        # Discarding the backlog frees a producer blocked on a full buffer.
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            discarded += 1
        if discarded:
            with self._lock:
                self._dropped_events += discarded

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[ProgressEvent]:
        return self.events()

    def events(self) -> Iterator[ProgressEvent]:
        """Yield buffered events in order until the stream is closed and drained."""
        while True:
            try:
                event = self._queue.get(timeout=_CONSUMER_POLL_SECONDS)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return
                continue
            yield event
            if event.terminal:
                return


class LoggingEventSink:
    """Sink for runs nobody watches: every event becomes a log line."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger if logger is not None else LOGGER
        self._closed = False
        self.last_event: ProgressEvent | None = None

    def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            self._logger.error(
                "ignoring event emitted after sink close kind=%s sequence=%s",
                event.kind,
                event.sequence,
            )
            return
        self.last_event = event
        log_method = self._logger.debug
        if event.kind == "error":
            log_method = self._logger.warning
        elif event.kind in {"started", "completed", "batchCompleted"}:
            log_method = self._logger.info
        log_method(
            "run event kind=%s sequence=%s message=%s",
            event.kind,
            event.sequence,
            event.message,
        )
        if event.terminal:
            self.close()

    def close(self) -> None:
        self._closed = True
