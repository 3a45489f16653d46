"""Drive a supplier import: profile upsert, job creation and sequential chunks.

Chunks are sent one at a time and each call is awaited before the next one;
the chunk processor accumulates counters per job and is not built for
concurrent writes on the same job.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy.orm import Session

from supplier_import.core.config import get_settings
from supplier_import.core.errors import ChunkTransportError
from supplier_import.db.models.import_job import JOB_QUEUED
from supplier_import.services import job_store
from supplier_import.services.chunk_processing import ChunkProcessor, ChunkRequest, ChunkResult, default_processor
from supplier_import.services.column_mapping import (
    ColumnMapping,
    MappingPolicy,
    ensure_mapping_valid,
    normalize_mapping,
)
from supplier_import.services.mapping_preview import PreparedDataset, prepare_dataset
from supplier_import.services.outcomes import ImportOutcome, classify_outcome, is_degenerate, remediation_message
from supplier_import.services.profile_service import save_default_profile
from supplier_import.services.progress_tracker import publish_record_update
from supplier_import.services.row_filter import FilterConfig
from supplier_import.services.staged_files import write_staged_rows
from supplier_import.storage.uploads import delete_upload
from supplier_import.utils.cells import Row

logger = logging.getLogger(__name__)

HANDLE_PROCESSING = "processing"
HANDLE_COMPLETED = "completed"
HANDLE_ERROR = "error"
HANDLE_CANCELLED = "cancelled"

CANCELLED_MESSAGE = "Import cancelled by user"


def split_chunks(rows: Sequence[Any], chunk_size: int) -> list[Sequence[Any]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [rows[start:start + chunk_size] for start in range(0, len(rows), chunk_size)]


@dataclass
class ImportHandle:
    """Caller-side view of one running import."""

    job_id: str
    supplier_id: str
    total_rows: int
    chunk_size: int
    status: str = HANDLE_PROCESSING
    processed_rows: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    chunks_sent: int = 0
    operation: str = "Preparing import"
    error_message: str | None = None
    outcome: ImportOutcome | None = None
    last_update_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Ask the chunk loop to stop before the next chunk is sent."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_finished(self) -> bool:
        return self.status != HANDLE_PROCESSING

    def touch(self, operation: str) -> None:
        self.operation = operation
        self.last_update_at = datetime.now(timezone.utc)

    def apply_result(self, result: ChunkResult) -> None:
        self.chunks_sent += 1
        self.processed_rows = max(self.processed_rows, result.total_processed)
        self.success = result.stats.success
        self.skipped = result.stats.skipped
        self.errors = result.stats.failed
        self.touch(f"Imported {self.processed_rows}/{self.total_rows} rows (chunk {result.chunk_index + 1})")

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "total_rows": self.total_rows,
            "chunk_size": self.chunk_size,
            "processed_rows": self.processed_rows,
            "success": self.success,
            "skipped": self.skipped,
            "errors": self.errors,
            "chunks_sent": self.chunks_sent,
            "operation": self.operation,
            "error_message": self.error_message,
            "outcome": self.outcome.value if self.outcome else None,
            "remediation": remediation_message(self.outcome),
            "last_update_at": self.last_update_at.isoformat(),
        }


class ImportOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: ChunkProcessor | None = None,
        *,
        chunk_size: int | None = None,
        on_progress: Callable[[ImportHandle], None] | None = None,
        publish: Callable[..., None] = publish_record_update,
    ):
        self._session_factory = session_factory
        self._processor = processor
        self._owns_processor = processor is None
        self.chunk_size = chunk_size or get_settings().chunk_size
        self._on_progress = on_progress
        self._publish = publish

    @property
    def processor(self) -> ChunkProcessor:
        """Built on first use so that job creation never opens a client."""
        if self._processor is None:
            self._processor = default_processor(self._session_factory)
        return self._processor

    def close(self) -> None:
        """Release a processor this orchestrator built; injected ones are left open."""
        if self._owns_processor and self._processor is not None:
            close = getattr(self._processor, "close", None)
            if close is not None:
                close()
            self._processor = None

    def __enter__(self) -> "ImportOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _notify(self, handle: ImportHandle) -> None:
        if self._on_progress:
            self._on_progress(handle)

    def _publish_job(self, job) -> None:
        self._publish("job", job.id, job_store.job_payload(job))

    def prepare(
        self,
        rows: Sequence[Row],
        mapping: Mapping[str, Any],
        filter_config: FilterConfig,
        supplier_id: str,
        *,
        owner_id: str | None = None,
        policy: MappingPolicy = MappingPolicy.REQUIRED_WITH_IDENTIFIER,
        column_count: int | None = None,
        source: str = "chunked",
        initial_status: str | None = None,
        uploaded_file_path: str | None = None,
    ) -> ImportHandle:
        """Validate the mapping, save it as the supplier default and create the job.

        ``rows`` are the filtered rows that will be imported; the job total is
        their count. With ``column_count`` set, indexes past the projected
        columns count as unmapped.
        """
        column_mapping = normalize_mapping(mapping, column_count)
        ensure_mapping_valid(column_mapping, policy)

        db = self._session_factory()
        try:
            save_default_profile(db, supplier_id, column_mapping, filter_config, owner_id=owner_id)
            kwargs = {"status": initial_status} if initial_status else {}
            job = job_store.create_job(
                db,
                supplier_id=supplier_id,
                total_rows=len(rows),
                chunk_size=self.chunk_size,
                column_mapping=column_mapping,
                owner_id=owner_id,
                source=source,
                uploaded_file_path=uploaded_file_path,
                **kwargs,
            )
            self._publish_job(job)
            handle = ImportHandle(
                job_id=job.id,
                supplier_id=supplier_id,
                total_rows=len(rows),
                chunk_size=self.chunk_size,
            )
            handle.touch("Import job created" if job.status != JOB_QUEUED else "Import queued")
            return handle
        finally:
            db.close()

    def run_chunks(self, handle: ImportHandle, rows: Sequence[Row], mapping: Mapping[str, Any]) -> ImportHandle:
        """Send every chunk in order; the first failure aborts the loop."""
        column_mapping: ColumnMapping = normalize_mapping(mapping)

        if not rows:
            logger.info(f"Import {handle.job_id} has no rows; completing immediately")
            return self._finish(handle)

        chunks = split_chunks(rows, handle.chunk_size)
        logger.info(f"Import {handle.job_id}: {len(rows)} rows in {len(chunks)} chunks of {handle.chunk_size}")

        for chunk_index, chunk_rows in enumerate(chunks):
            if handle.cancel_requested:
                return self.abort(handle, CANCELLED_MESSAGE, HANDLE_CANCELLED)

            handle.touch(f"Sending chunk {chunk_index + 1}/{len(chunks)}")
            self._notify(handle)
            request = ChunkRequest(
                job_id=handle.job_id,
                chunk_index=chunk_index,
                chunk_rows=chunk_rows,
                column_mapping=column_mapping,
                supplier_id=handle.supplier_id,
            )
            try:
                result = self.processor.process_chunk(request)
            except ChunkTransportError as e:
                logger.error(f"Chunk {chunk_index} of import {handle.job_id} failed: {e.raw_message}", exc_info=True)
                return self.abort(handle, e.raw_message)
            except Exception as e:
                logger.error(f"Chunk {chunk_index} of import {handle.job_id} failed: {e}", exc_info=True)
                return self.abort(handle, str(e))

            handle.apply_result(result)
            self._notify(handle)
            if result.is_complete:
                break

        return self._finish(handle)

    def start_import(
        self,
        raw_rows: Sequence[Row],
        mapping: Mapping[str, Any],
        filter_config: FilterConfig,
        supplier_id: str,
        *,
        has_header: bool | None = None,
        owner_id: str | None = None,
        policy: MappingPolicy = MappingPolicy.REQUIRED_WITH_IDENTIFIER,
    ) -> ImportHandle:
        """Filter the raw sheet, then prepare and run a chunked import to the end."""
        dataset = prepare_dataset(raw_rows, filter_config, has_header)
        handle = self.prepare(
            dataset.rows,
            mapping,
            filter_config,
            supplier_id,
            owner_id=owner_id,
            policy=policy,
            column_count=len(dataset.labels),
        )
        return self.run_chunks(handle, dataset.rows, mapping)

    def start_file_import(
        self,
        raw_rows: Sequence[Row],
        mapping: Mapping[str, Any],
        filter_config: FilterConfig,
        supplier_id: str,
        *,
        has_header: bool | None = None,
        owner_id: str | None = None,
        policy: MappingPolicy = MappingPolicy.REQUIRED_WITH_IDENTIFIER,
        enqueue: Callable[[str, str], Any] | None = None,
    ) -> ImportHandle:
        """Stage the filtered rows once and let a worker do its own chunking.

        The job starts ``queued``; the worker moves it to ``processing`` and
        then to a terminal status.
        """
        dataset: PreparedDataset = prepare_dataset(raw_rows, filter_config, has_header)
        staged = write_staged_rows(dataset.labels, dataset.rows)
        try:
            handle = self.prepare(
                dataset.rows,
                mapping,
                filter_config,
                supplier_id,
                owner_id=owner_id,
                policy=policy,
                column_count=len(dataset.labels),
                source="file",
                initial_status=JOB_QUEUED,
                uploaded_file_path=str(staged),
            )
        except Exception:
            delete_upload(staged)
            raise

        if enqueue is None:
            from supplier_import.workers.tasks.import_jobs import import_supplier_file_task

            def enqueue(job_id: str, path: str):
                return import_supplier_file_task.apply_async(args=(job_id, path), queue="imports")

        try:
            enqueue(handle.job_id, str(staged))
        except Exception as e:
            logger.error(f"Error enqueueing file import {handle.job_id}: {e}", exc_info=True)
            return self.abort(handle, f"Failed to start import process: {e}")
        return handle

    def abort(self, handle: ImportHandle, message: str, status: str = HANDLE_ERROR) -> ImportHandle:
        """Fail the job with the raw message; rows already applied stay applied."""
        db = self._session_factory()
        try:
            job = job_store.mark_job_failed(db, handle.job_id, message)
            self._publish_job(job)
        except Exception as e:
            logger.error(f"Could not mark import {handle.job_id} failed: {e}", exc_info=True)
        finally:
            db.close()

        handle.status = status
        handle.error_message = message
        handle.outcome = ImportOutcome.FAILED
        handle.touch("Import cancelled" if status == HANDLE_CANCELLED else "Import failed")
        self._notify(handle)
        return handle

    def _finish(self, handle: ImportHandle) -> ImportHandle:
        db = self._session_factory()
        try:
            job = job_store.complete_job(db, handle.job_id)
            self._publish_job(job)
            success = (job.new_records or 0) + (job.matched or 0)
            handle.processed_rows = max(handle.processed_rows, job.processed_rows or 0)
            handle.success = success
            handle.skipped = job.skipped or 0
            handle.errors = job.failed or 0
            handle.outcome = classify_outcome(job.status, handle.processed_rows, success, handle.skipped)
        finally:
            db.close()

        handle.status = HANDLE_COMPLETED
        if is_degenerate(handle.outcome):
            logger.warning(
                f"Import {handle.job_id} finished without products "
                f"(processed={handle.processed_rows}, skipped={handle.skipped}): {handle.outcome.value}"
            )
            handle.touch("Import finished without products")
        else:
            handle.touch("Import finished")
        self._notify(handle)
        return handle
