"""Celery tasks running supplier imports outside the request cycle."""

from __future__ import annotations

import logging
from pathlib import Path

from supplier_import.db.models.import_job import JOB_PROCESSING
from supplier_import.db.session import get_fresh_session
from supplier_import.services import job_store
from supplier_import.services.chunk_processing import ChunkRequest, LocalChunkProcessor
from supplier_import.services.import_orchestrator import ImportHandle, ImportOrchestrator
from supplier_import.services.progress_tracker import publish_record_update
from supplier_import.services.staged_files import count_rows, iter_staged_chunks, read_staged_rows
from supplier_import.storage.uploads import delete_upload
from supplier_import.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="supplier_import.workers.tasks.run_chunked_import")
def run_chunked_import_task(self, job_id: str, file_path: str):
    """Send the staged rows of a prepared job through the chunk processor."""
    session = get_fresh_session()
    try:
        job = job_store.get_job(session, job_id)
        handle = ImportHandle(
            job_id=job.id,
            supplier_id=job.supplier_id,
            total_rows=job.total_rows or 0,
            chunk_size=job.chunk_size,
        )
        mapping = dict(job.column_mapping or {})
    finally:
        session.close()

    try:
        rows = read_staged_rows(Path(file_path))
        with ImportOrchestrator(get_fresh_session, chunk_size=handle.chunk_size) as orchestrator:
            handle = orchestrator.run_chunks(handle, rows, mapping)
        logger.info(f"Chunked import {job_id} ended with status={handle.status}")
        return handle.to_dict()
    except ValueError as exc:
        session = get_fresh_session()
        try:
            job = job_store.mark_job_failed(session, job_id, str(exc))
            publish_record_update("job", job.id, job_store.job_payload(job))
        finally:
            session.close()
        raise
    finally:
        delete_upload(file_path)


@celery_app.task(bind=True, name="supplier_import.workers.tasks.import_supplier_file")
def import_supplier_file_task(self, job_id: str, file_path: str):
    """Process a whole staged file, chunking it inside the worker."""
    session = get_fresh_session()
    path_obj = Path(file_path).resolve()
    processor = LocalChunkProcessor(get_fresh_session)
    try:
        job = job_store.get_job(session, job_id)
        if job.is_terminal:
            logger.info(f"File import {job_id} already {job.status}; nothing to do")
            return job_store.job_payload(job)

        job_store.transition_job(job, JOB_PROCESSING)
        job.total_rows = count_rows(path_obj)
        session.commit()
        session.refresh(job)
        publish_record_update("job", job.id, job_store.job_payload(job))

        mapping = dict(job.column_mapping or {})
        for chunk_index, chunk in enumerate(iter_staged_chunks(path_obj, job.chunk_size)):
            result = processor.process_chunk(
                ChunkRequest(
                    job_id=job_id,
                    chunk_index=chunk_index,
                    chunk_rows=chunk,
                    column_mapping=mapping,
                    supplier_id=job.supplier_id,
                )
            )
            if result.is_complete:
                break

        session.expire_all()
        job = job_store.complete_job(session, job_id)
        publish_record_update("job", job.id, job_store.job_payload(job))
        return job_store.job_payload(job)
    except Exception as exc:
        session.rollback()
        logger.error(f"File import {job_id} failed: {exc}", exc_info=True)
        job = job_store.mark_job_failed(session, job_id, str(exc))
        publish_record_update("job", job.id, job_store.job_payload(job))
        raise
    finally:
        delete_upload(path_obj)
        session.close()
