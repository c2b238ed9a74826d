from __future__ import annotations

import errno
import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from vidtag.models.tagging_contracts import TagRunOptions
from vidtag.services.event_stream import LoggingEventSink
from vidtag.services.orchestrator import BatchOrchestrator
from vidtag.services.unsorted_processor import UnsortedBookmarkProcessor
from vidtag.telemetry import TelemetryClient

LOGGER = logging.getLogger("vidtag.sweep")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None

SourceOutcome = Literal["completed", "aborted", "failed"]


@dataclass(frozen=True)
class SweepSourceResult:
    playlist_id: str
    outcome: SourceOutcome
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None


@dataclass(frozen=True)
class SweepReport:
    tick_id: str
    started_at: datetime
    finished_at: datetime
    sources: tuple[SweepSourceResult, ...] = field(default_factory=tuple)

    @property
    def failed_sources(self) -> int:
        return sum(1 for source in self.sources if source.outcome != "completed")


class PeriodicSweep:
    """One sweep tick runs every configured playlist in order; a bad playlist never stops the rest."""

    def __init__(
        self,
        *,
        orchestrator: BatchOrchestrator,
        playlist_ids: Sequence[str],
        options_factory: Callable[[], TagRunOptions] = TagRunOptions,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._playlist_ids = tuple(
            playlist_id.strip() for playlist_id in playlist_ids if playlist_id.strip()
        )
        self._options_factory = options_factory
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._tick_lock = threading.Lock()

    @property
    def playlist_ids(self) -> tuple[str, ...]:
        return self._playlist_ids

    def run_once(self) -> SweepReport:
        with self._tick_lock:
            return self._run_tick()

    def _run_tick(self) -> SweepReport:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(sweep_tick_id=tick_id)
        started_at = datetime.now(UTC)
        started_perf = time.perf_counter()
        self._telemetry.emit(
            "sweep.tick.start",
            tick_id=tick_id,
            sources=len(self._playlist_ids),
        )
        try:
            results = [self._run_source(tick_id, playlist_id) for playlist_id in self._playlist_ids]
            report = SweepReport(
                tick_id=tick_id,
                started_at=started_at,
                finished_at=datetime.now(UTC),
                sources=tuple(results),
            )
            self._telemetry.emit(
                "sweep.tick.finish",
                tick_id=tick_id,
                duration_ms=int((time.perf_counter() - started_perf) * 1000),
                sources=len(results),
                failed_sources=report.failed_sources,
            )
            LOGGER.info(
                "sweep tick finished sources=%s failed_sources=%s",
                len(results),
                report.failed_sources,
            )
            return report
        finally:
            reset_contextvars(**tick_tokens)

    def _run_source(self, tick_id: str, playlist_id: str) -> SweepSourceResult:
        try:
            summary = self._orchestrator.run(
                playlist_id,
                self._options_factory(),
                LoggingEventSink(LOGGER),
            )
        except Exception as exc:
            self._telemetry.emit(
                "sweep.source.error",
                tick_id=tick_id,
                playlist_id=playlist_id,
                error_type=type(exc).__name__,
            )
            LOGGER.warning("sweep source failed playlist_id=%s", playlist_id, exc_info=True)
            return SweepSourceResult(playlist_id=playlist_id, outcome="failed", error=str(exc))

        if summary.aborted:
            self._telemetry.emit(
                "sweep.source.error",
                tick_id=tick_id,
                playlist_id=playlist_id,
                error_type="FatalSourceError",
            )
            LOGGER.warning("sweep source aborted playlist_id=%s", playlist_id)
        return SweepSourceResult(
            playlist_id=playlist_id,
            outcome="aborted" if summary.aborted else "completed",
            total=summary.total,
            succeeded=summary.succeeded,
            skipped=summary.skipped,
            failed=summary.failed,
            error="playlist fetch failed" if summary.aborted else None,
        )


@dataclass(frozen=True)
class _ScheduledJob:
    name: str
    run: Callable[[], Any]
    interval_seconds: float
    initial_delay_seconds: float


class SweepScheduler:
    """
    Background thread that runs the playlist sweep and the unsorted processor on fixed delays.

    Each job waits its initial delay, then runs again `interval` seconds after the previous
    run finished. A file lock in the data dir keeps one scheduler per host.
    """

    def __init__(
        self,
        *,
        sweep: PeriodicSweep | None = None,
        sweep_interval_seconds: float = 3_600,
        sweep_initial_delay_seconds: float = 10,
        unsorted_processor: UnsortedBookmarkProcessor | None = None,
        unsorted_interval_seconds: float = 3_600,
        unsorted_initial_delay_seconds: float = 30,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._jobs: list[_ScheduledJob] = []
        if sweep is not None:
            self._jobs.append(
                _ScheduledJob(
                    name="sweep",
                    run=sweep.run_once,
                    interval_seconds=max(1.0, sweep_interval_seconds),
                    initial_delay_seconds=max(0.0, sweep_initial_delay_seconds),
                )
            )
        if unsorted_processor is not None:
            self._jobs.append(
                _ScheduledJob(
                    name="unsorted",
                    run=unsorted_processor.process,
                    interval_seconds=max(1.0, unsorted_interval_seconds),
                    initial_delay_seconds=max(0.0, unsorted_initial_delay_seconds),
                )
            )
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running or not self._jobs:
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="vidtag-sweep-scheduler")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning("sweep single-instance lock unavailable on this platform; starting anyway")
            return True

        lock_path = self._lock_path
        lock_file: Any | None = None
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if lock_file is not None:
                try:
                    lock_file.close()
                except OSError:
                    pass
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "sweep scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "sweep lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("sweep lock file metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("sweep lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                pass
            self._lock_file = None
            self._lock_acquired = False

    def _run_loop(self) -> None:
        started = time.monotonic()
        next_runs = {job.name: started + job.initial_delay_seconds for job in self._jobs}
        while not self._stop_event.is_set():
            now = time.monotonic()
            for job in self._jobs:
                if self._stop_event.is_set():
                    break
                if now >= next_runs[job.name]:
                    self._run_job(job)
                    next_runs[job.name] = time.monotonic() + job.interval_seconds

            sleep_for_seconds = min(next_runs.values()) - time.monotonic()
            self._stop_event.wait(max(0.0, sleep_for_seconds))

    def _run_job(self, job: _ScheduledJob) -> None:
        try:
            job.run()
        except Exception as exc:
            self._telemetry.emit(
                "sweep.job.error",
                job=job.name,
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled job failed job=%s", job.name, exc_info=True)
