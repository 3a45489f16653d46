"""ImportJob persistence and its queued/processing/terminal state machine."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from supplier_import.core.errors import InvalidJobTransition, JobNotFoundError
from supplier_import.db.models.import_job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    ImportJob,
)
from supplier_import.db.models.inbox_record import InboxRecord

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_QUEUED: frozenset({JOB_PROCESSING}),
    JOB_PROCESSING: frozenset({JOB_COMPLETED, JOB_FAILED}),
    JOB_COMPLETED: frozenset(),
    JOB_FAILED: frozenset(),
}


def transition_job(job: ImportJob, target: str) -> bool:
    """Move ``job`` to ``target``; returns False when it is already there.

    Re-applying the current status is a no-op so repeated completion
    notices stay harmless. Anything else off the allowed path raises.
    """
    current = job.status or JOB_QUEUED
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidJobTransition(job.id, current, target)

    now = datetime.now(timezone.utc)
    job.status = target
    if target == JOB_PROCESSING:
        job.started_at = job.started_at or now
    elif target in (JOB_COMPLETED, JOB_FAILED):
        job.finished_at = now
    logger.info(f"Job {job.id} moved {current} -> {target}")
    return True


def create_job(
    db: Session,
    *,
    supplier_id: str,
    total_rows: int,
    chunk_size: int,
    column_mapping: Mapping[str, int | None],
    owner_id: str | None = None,
    source: str = "chunked",
    status: str = JOB_PROCESSING,
    uploaded_file_path: str | None = None,
) -> ImportJob:
    if status not in (JOB_QUEUED, JOB_PROCESSING):
        raise ValueError(f"New jobs start queued or processing, not {status}")

    job = ImportJob(
        id=str(uuid.uuid4()),
        owner_id=owner_id,
        supplier_id=supplier_id,
        source=source,
        status=JOB_QUEUED,
        total_rows=total_rows,
        processed_rows=0,
        current_chunk_index=0,
        chunk_size=chunk_size,
        column_mapping=dict(column_mapping),
        applied_chunks=[],
        uploaded_file_path=uploaded_file_path,
    )
    if status == JOB_PROCESSING:
        transition_job(job, JOB_PROCESSING)
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Created import job {job.id} for supplier {supplier_id} ({total_rows} rows)")
    return job


def get_job(db: Session, job_id: str) -> ImportJob:
    job = db.get(ImportJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_jobs(db: Session, *, status: str | None = None, supplier_id: str | None = None, limit: int = 50) -> list[ImportJob]:
    query = select(ImportJob)
    if status:
        query = query.where(ImportJob.status == status)
    if supplier_id:
        query = query.where(ImportJob.supplier_id == supplier_id)
    query = query.order_by(ImportJob.created_at.desc()).limit(limit)
    return list(db.scalars(query).all())


def mark_job_failed(db: Session, job_id: str, message: str) -> ImportJob:
    """Fail a job without touching its counters; terminal jobs are left alone."""
    job = get_job(db, job_id)
    if job.is_terminal:
        logger.info(f"Job {job_id} already {job.status}; not marking failed")
        return job
    if job.status == JOB_QUEUED:
        transition_job(job, JOB_PROCESSING)
    transition_job(job, JOB_FAILED)
    job.error_message = message
    db.commit()
    db.refresh(job)
    return job


def complete_job(db: Session, job_id: str) -> ImportJob:
    job = get_job(db, job_id)
    if job.status == JOB_QUEUED:
        transition_job(job, JOB_PROCESSING)
    if not job.is_terminal:
        transition_job(job, JOB_COMPLETED)
        db.commit()
        db.refresh(job)
    return job


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def job_payload(job: ImportJob) -> dict[str, Any]:
    """Plain dict used for push notifications, polling and API responses."""
    return {
        "kind": "job",
        "id": job.id,
        "supplier_id": job.supplier_id,
        "source": job.source,
        "status": job.status,
        "total_rows": job.total_rows or 0,
        "processed_rows": job.processed_rows or 0,
        "current_chunk_index": job.current_chunk_index or 0,
        "chunk_size": job.chunk_size,
        "matched": job.matched or 0,
        "new_records": job.new_records or 0,
        "skipped": job.skipped or 0,
        "failed": job.failed or 0,
        "links_created": job.links_created or 0,
        "unlinked_records": job.unlinked_records or 0,
        "error_message": job.error_message,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "finished_at": _iso(job.finished_at),
        "updated_at": _iso(job.updated_at),
    }


def inbox_payload(record: InboxRecord) -> dict[str, Any]:
    return {
        "kind": "inbox",
        "id": record.id,
        "supplier_id": record.supplier_id,
        "status": record.status,
        "processing_logs": list(record.processing_logs or []),
        "updated_at": _iso(record.updated_at),
    }


def get_inbox_record(db: Session, record_id: str) -> InboxRecord:
    record = db.get(InboxRecord, record_id)
    if record is None:
        raise JobNotFoundError(record_id, kind="inbox")
    return record
