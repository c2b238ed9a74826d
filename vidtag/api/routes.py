from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from vidtag.dependencies import (
    get_resilient_call,
    get_run_dispatcher,
    get_sweep,
    get_unsorted_processor,
)
from vidtag.models.run_models import ProgressEvent
from vidtag.models.tagging_contracts import (
    CircuitSnapshotResponse,
    ErrorResponse,
    SweepReportResponse,
    SweepSourceResultResponse,
    TagPlaylistRequest,
    UnsortedReportResponse,
)
from vidtag.services.event_stream import EventStream
from vidtag.services.resilience import ResilientCall
from vidtag.services.run_dispatcher import RunDispatcher
from vidtag.services.sweep import PeriodicSweep
from vidtag.services.unsorted_processor import UnsortedBookmarkProcessor
from vidtag.services.youtube_source import extract_playlist_id

router = APIRouter(prefix="/api/v1")

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def format_sse(event: ProgressEvent) -> str:
    payload = json.dumps(event.to_payload(), default=str, separators=(",", ":"))
    return f"id: {event.sequence}\nevent: {event.kind}\ndata: {payload}\n\n"


def _sse_frames(stream: EventStream) -> Iterator[str]:
    try:
        for event in stream.events():
            yield format_sse(event)
    finally:
        # Runs when the client disconnects and the response closes this generator.
        stream.detach()


@router.post(
    "/playlists/tag",
    tags=["playlists"],
    operation_id="tag_playlist",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}, **_ERROR_RESPONSES},
)
def tag_playlist(
    request: TagPlaylistRequest,
    dispatcher: Annotated[RunDispatcher, Depends(get_run_dispatcher)],
) -> StreamingResponse:
    # Malformed input is rejected here so it never opens a stream.
    extract_playlist_id(request.playlist_input)
    submitted = dispatcher.submit(request.playlist_input, request.options)
    return StreamingResponse(
        _sse_frames(submitted.stream),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Run-ID": submitted.run_id,
        },
    )


@router.get(
    "/circuits",
    response_model=list[CircuitSnapshotResponse],
    tags=["system"],
    operation_id="list_circuits",
)
def list_circuits(
    resilient_call: Annotated[ResilientCall, Depends(get_resilient_call)],
) -> list[CircuitSnapshotResponse]:
    return [
        CircuitSnapshotResponse(
            call_site=snapshot.call_site,
            state=snapshot.state,
            window_size=snapshot.window_size,
            window_capacity=snapshot.window_capacity,
            failure_count=snapshot.failure_count,
            failure_rate=snapshot.failure_rate,
            retry_after_seconds=snapshot.retry_after_seconds,
        )
        for snapshot in resilient_call.registry.snapshot()
    ]


@router.post(
    "/sweep/run",
    response_model=SweepReportResponse,
    tags=["sweep"],
    operation_id="run_sweep",
)
def run_sweep(
    sweep: Annotated[PeriodicSweep, Depends(get_sweep)],
) -> SweepReportResponse:
    report = sweep.run_once()
    return SweepReportResponse(
        tick_id=report.tick_id,
        started_at=report.started_at,
        finished_at=report.finished_at,
        sources=[
            SweepSourceResultResponse(
                playlist_id=source.playlist_id,
                outcome=source.outcome,
                total=source.total,
                succeeded=source.succeeded,
                skipped=source.skipped,
                failed=source.failed,
                error=source.error,
            )
            for source in report.sources
        ],
    )


@router.post(
    "/unsorted/process",
    response_model=UnsortedReportResponse,
    responses=_ERROR_RESPONSES,
    tags=["unsorted"],
    operation_id="process_unsorted",
)
def process_unsorted(
    processor: Annotated[UnsortedBookmarkProcessor, Depends(get_unsorted_processor)],
) -> UnsortedReportResponse:
    report = processor.process()
    return UnsortedReportResponse(
        total=report.total,
        youtube=report.youtube,
        succeeded=report.succeeded,
        skipped=report.skipped,
        failed=report.failed,
    )
