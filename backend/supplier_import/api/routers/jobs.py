"""Import job tracking endpoints (snapshots, SSE stream, legacy inbox)."""
from __future__ import annotations

import asyncio
import json
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from supplier_import.api.dependencies.db import get_session, get_session_factory
from supplier_import.api.routers.job_helpers import serialize_job, serialize_snapshot
from supplier_import.api.schemas.job import JobStatus, ProgressSnapshotOut
from supplier_import.core.errors import JobNotFoundError
from supplier_import.services import job_store, progress_tracker
from supplier_import.services.progress_reconciler import (
    ProgressReconciler,
    ProgressSnapshot,
    RecordStore,
    TrackingTarget,
    monitor_import,
    update_from_payload,
)

router = APIRouter()


def reconcile_once(store: RecordStore, reconciler: ProgressReconciler) -> ProgressSnapshot:
    """Feed the stored record, then the last pushed payload, through the reconciler."""
    target = reconciler.tracking_target
    record_id = reconciler.tracked_id
    snapshot = reconciler.reconcile(store.fetch(target, record_id))

    # The cached payload is read on demand like the record, so it counts as a poll.
    cached = progress_tracker.fetch_cached_update(target.value, record_id)
    if cached:
        snapshot = reconciler.reconcile(update_from_payload(cached))

    # An inbox record that names its job hands over to the job record.
    if reconciler.tracking_target is not target:
        snapshot = reconciler.reconcile(store.fetch(reconciler.tracking_target, reconciler.tracked_id))
    return snapshot


@router.get(
    "/",
    summary="List import jobs",
    response_model=list[JobStatus],
)
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status: str | None = Query(None, description="Filter by status (queued, processing, completed, failed)"),
    supplier_id: str | None = Query(None),
    db: Session = Depends(get_session),
) -> list[JobStatus]:
    """Newest first."""
    jobs = job_store.list_jobs(db, status=status, supplier_id=supplier_id, limit=limit)
    return [serialize_job(job) for job in jobs]


@router.get(
    "/inbox/{record_id}",
    summary="Progress of a legacy inbox record",
    response_model=ProgressSnapshotOut,
)
async def get_inbox_progress(
    record_id: str,
    session_factory=Depends(get_session_factory),
) -> ProgressSnapshotOut:
    """Reads the inbox log list, or the job it handed over to."""
    reconciler = ProgressReconciler(record_id, TrackingTarget.INBOX)
    try:
        snapshot = reconcile_once(RecordStore(session_factory), reconciler)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_snapshot(snapshot)


@router.get(
    "/{job_id}",
    summary="Reconciled progress snapshot of one job",
    response_model=ProgressSnapshotOut,
)
async def get_job(
    job_id: str,
    session_factory=Depends(get_session_factory),
) -> ProgressSnapshotOut:
    """Counters, outcome category and remediation text for polling dashboards."""
    reconciler = ProgressReconciler(job_id, TrackingTarget.JOB)
    try:
        snapshot = reconcile_once(RecordStore(session_factory), reconciler)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return serialize_snapshot(snapshot)


@router.get(
    "/{job_id}/record",
    summary="Raw job record",
    response_model=JobStatus,
)
async def get_job_record(
    job_id: str,
    db: Session = Depends(get_session),
) -> JobStatus:
    try:
        return serialize_job(job_store.get_job(db, job_id))
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc


@router.get(
    "/{job_id}/stream",
    summary="Server-Sent Events stream for real-time progress",
)
async def stream_job_progress(
    job_id: str,
    session_factory=Depends(get_session_factory),
) -> StreamingResponse:
    """Stream reconciled snapshots via Server-Sent Events (SSE).

    Redis pushes are forwarded as they arrive; the database is polled every
    ``poll_interval_seconds`` in case pushes stop. One ``data:`` event per
    change, then ``event: close`` once the job is terminal.
    """
    store = RecordStore(session_factory)
    try:
        store.read_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc

    async def event_generator() -> AsyncGenerator[str, None]:
        """Yield SSE-formatted progress updates."""
        loop = asyncio.get_running_loop()
        updates: asyncio.Queue[ProgressSnapshot] = asyncio.Queue()

        def forward(snapshot: ProgressSnapshot) -> None:
            loop.call_soon_threadsafe(updates.put_nowait, snapshot)

        monitor = await asyncio.to_thread(
            monitor_import,
            session_factory,
            job_id,
            TrackingTarget.JOB,
            subscribe=progress_tracker.subscribe,
            on_terminal=forward,
            on_notify=forward,
        )
        try:
            try:
                snapshot = await asyncio.to_thread(reconcile_once, store, monitor.reconciler)
            except JobNotFoundError:
                yield f"event: error\ndata: {json.dumps({'error': 'Job not found'})}\n\n"
                return

            last_sent = snapshot
            yield f"data: {serialize_snapshot(snapshot).model_dump_json()}\n\n"
            while not snapshot.is_terminal:
                snapshot = await updates.get()
                if snapshot != last_sent:
                    last_sent = snapshot
                    yield f"data: {serialize_snapshot(snapshot).model_dump_json()}\n\n"
            yield "event: close\ndata: {}\n\n"
        finally:
            monitor.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
