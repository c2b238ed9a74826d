from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from uuid import uuid4

from vidtag.models.run_models import RunSummary
from vidtag.models.tagging_contracts import TagRunOptions
from vidtag.services.event_stream import EventStream
from vidtag.services.orchestrator import BatchOrchestrator

LOGGER = logging.getLogger("vidtag.dispatcher")


@dataclass(frozen=True)
class SubmittedRun:
    run_id: str
    stream: EventStream
    future: Future[RunSummary]


class RunDispatcher:
    """Runs playlist jobs on a small worker pool and hands back their event streams."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        *,
        worker_count: int = 2,
        max_buffered_events: int = 256,
        emit_timeout_seconds: float = 5.0,
        strict_streams: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, worker_count),
            thread_name_prefix="vidtag-run",
        )
        self._max_buffered_events = max_buffered_events
        self._emit_timeout_seconds = emit_timeout_seconds
        self._strict_streams = strict_streams

    def submit(self, source_input: str, options: TagRunOptions) -> SubmittedRun:
        run_id = uuid4().hex
        stream = EventStream(
            max_buffered_events=self._max_buffered_events,
            emit_timeout_seconds=self._emit_timeout_seconds,
            strict=self._strict_streams,
        )
        future = self._executor.submit(self._run, run_id, source_input, options, stream)
        LOGGER.info("playlist run submitted run_id=%s playlist=%s", run_id, source_input)
        return SubmittedRun(run_id=run_id, stream=stream, future=future)

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run(
        self,
        run_id: str,
        source_input: str,
        options: TagRunOptions,
        stream: EventStream,
    ) -> RunSummary:
        try:
            return self._orchestrator.run(source_input, options, stream, run_id=run_id)
        except Exception:
            LOGGER.exception("playlist run crashed run_id=%s", run_id)
            raise
        finally:
            # Unblocks the consumer even when the run died before its terminal event.
            stream.close()
