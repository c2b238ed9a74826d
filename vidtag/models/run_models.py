from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

EventKind = Literal[
    "started",
    "progress",
    "itemCompleted",
    "itemSkipped",
    "batchCompleted",
    "error",
    "completed",
]
ItemOutcome = Literal["completed", "skipped", "failed"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_tag_name(raw_name: str) -> str:
    """Lower-case a tag and join its words with hyphens (`Machine Learning` -> `machine-learning`)."""
    return "-".join(raw_name.strip().lower().split())


@dataclass(frozen=True)
class VideoItem:
    video_id: str
    url: str
    title: str
    description: str | None = None
    published_at: datetime | None = None
    duration_seconds: int | None = None


@dataclass(frozen=True)
class TagSuggestion:
    tag: str
    confidence: float
    is_existing: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "confidence": self.confidence,
            "is_existing": self.is_existing,
        }


@dataclass(frozen=True)
class ItemResult:
    item_id: str
    outcome: ItemOutcome
    applied_tags: tuple[str, ...] = ()
    failure_reason: str | None = None

    @classmethod
    def completed(cls, item_id: str, tags: tuple[str, ...]) -> ItemResult:
        return cls(item_id=item_id, outcome="completed", applied_tags=tags)

    @classmethod
    def skipped(cls, item_id: str) -> ItemResult:
        return cls(item_id=item_id, outcome="skipped")

    @classmethod
    def failed(cls, item_id: str, reason: str) -> ItemResult:
        return cls(item_id=item_id, outcome="failed", failure_reason=reason)


@dataclass
class RunSummary:
    """
    Counters for one run.

    The orchestrator owns the instance for the life of the run and calls `record` once per
    fetched item; `finalize` stamps the end time and makes later mutation an error.
    """

    run_id: str
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False

    @property
    def finalized(self) -> bool:
        return self.ended_at is not None

    def record(self, result: ItemResult) -> None:
        if self.finalized:
            raise RuntimeError(f"run summary {self.run_id} is already finalized")
        self.total += 1
        if result.outcome == "completed":
            self.succeeded += 1
        elif result.outcome == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def finalize(self, *, aborted: bool = False, ended_at: datetime | None = None) -> None:
        if self.finalized:
            raise RuntimeError(f"run summary {self.run_id} is already finalized")
        self.aborted = aborted
        self.ended_at = ended_at if ended_at is not None else utc_now()

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "aborted": self.aborted,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at is not None else None,
        }


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    message: str
    data: dict[str, Any] | None = None
    sequence: int = 0

    @property
    def terminal(self) -> bool:
        """True for `completed` and for run-scoped (fatal) `error` events."""
        if self.kind == "completed":
            return True
        if self.kind == "error":
            return self.data is None or self.data.get("scope") != "item"
        return False

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "data": self.data,
            "sequence": self.sequence,
        }
