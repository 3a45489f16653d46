"""
Import orchestration tests against an in-memory database.

Chunks go through the real in-process processor; failures are injected
by wrapping it.
"""

from unittest.mock import MagicMock

import pytest

from supplier_import.core.config import get_settings
from supplier_import.core.errors import ChunkTransportError, InvalidMappingError
from supplier_import.db.models.import_job import JOB_COMPLETED, JOB_FAILED, JOB_QUEUED
from supplier_import.db.models.supplier_product import SupplierProduct
from supplier_import.services import job_store
from supplier_import.services.chunk_processing import HttpChunkProcessor, LocalChunkProcessor
from supplier_import.services.import_orchestrator import (
    HANDLE_CANCELLED,
    HANDLE_COMPLETED,
    HANDLE_ERROR,
    ImportOrchestrator,
    split_chunks,
)
from supplier_import.services.mapping_preview import prepare_dataset
from supplier_import.services.outcomes import ImportOutcome
from supplier_import.services.profile_service import get_default_profile
from supplier_import.services.row_filter import FilterConfig
from supplier_import.services.staged_files import write_staged_rows
from supplier_import.storage.uploads import UPLOADS_DIR
from supplier_import.workers.tasks.import_jobs import import_supplier_file_task, run_chunked_import_task

from tests.conftest import CATALOG_HEADER, catalog_row


class RecordingProcessor:
    """Delegates to the local processor and records every call."""

    def __init__(self, session_factory, publish, fail_on=None, message="backend exploded"):
        self.inner = LocalChunkProcessor(session_factory, publish=publish)
        self.fail_on = fail_on
        self.message = message
        self.calls = []

    def process_chunk(self, request):
        self.calls.append((request.chunk_index, len(request.chunk_rows)))
        if request.chunk_index == self.fail_on:
            raise ChunkTransportError(request.job_id, request.chunk_index, self.message)
        return self.inner.process_chunk(request)


@pytest.fixture
def make_orchestrator(session_factory, published):
    def build(fail_on=None, **kwargs):
        processor = RecordingProcessor(session_factory, published, fail_on=fail_on)
        orchestrator = ImportOrchestrator(
            session_factory, processor, chunk_size=100, publish=published, **kwargs
        )
        return orchestrator, processor

    return build


class TestChunkLoop:

    def test_chunks_are_sent_in_order(self, make_orchestrator, catalog_rows, catalog_mapping, db):
        orchestrator, processor = make_orchestrator()

        handle = orchestrator.start_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1")

        assert processor.calls == [(0, 100), (1, 100), (2, 50)]
        assert handle.status == HANDLE_COMPLETED
        assert handle.processed_rows == 250
        assert handle.success == 250
        assert handle.outcome is ImportOutcome.SUCCESS
        job = job_store.get_job(db, handle.job_id)
        assert job.status == JOB_COMPLETED
        assert job.total_rows == 250
        assert db.query(SupplierProduct).count() == 250

    def test_failed_chunk_stops_the_loop(self, make_orchestrator, catalog_rows, catalog_mapping, db):
        orchestrator, processor = make_orchestrator(fail_on=1)

        handle = orchestrator.start_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1")

        assert processor.calls == [(0, 100), (1, 100)]
        assert handle.status == HANDLE_ERROR
        assert handle.error_message == "backend exploded"
        assert handle.processed_rows == 100
        job = job_store.get_job(db, handle.job_id)
        assert job.status == JOB_FAILED
        assert job.processed_rows == 100
        assert job.error_message == "backend exploded"
        # Rows of the first chunk stay committed.
        assert db.query(SupplierProduct).count() == 100

    def test_progress_callback_sees_each_chunk(self, make_orchestrator, catalog_rows, catalog_mapping):
        seen = []
        orchestrator, _ = make_orchestrator(on_progress=lambda handle: seen.append(handle.processed_rows))
        orchestrator.start_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1")
        assert 100 in seen and 200 in seen and seen[-1] == 250

    def test_cancel_before_next_chunk(self, make_orchestrator, catalog_rows, catalog_mapping, db):
        def cancel_after_first(handle):
            if handle.chunks_sent == 1:
                handle.cancel()

        orchestrator, processor = make_orchestrator(on_progress=cancel_after_first)
        handle = orchestrator.start_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1")

        assert len(processor.calls) == 1
        assert handle.status == HANDLE_CANCELLED
        assert job_store.get_job(db, handle.job_id).status == JOB_FAILED

    def test_zero_rows_completes_immediately(self, make_orchestrator, catalog_mapping, db):
        orchestrator, processor = make_orchestrator()
        header = [["Référence", "Désignation", "Prix HT", "EAN", "Stock"]]

        handle = orchestrator.start_import(header, catalog_mapping, FilterConfig(), "sup-1", has_header=True)

        assert processor.calls == []
        assert handle.status == HANDLE_COMPLETED
        assert job_store.get_job(db, handle.job_id).status == JOB_COMPLETED

    def test_mapping_without_identifier_is_refused(self, make_orchestrator, catalog_rows, db):
        orchestrator, processor = make_orchestrator()
        with pytest.raises(InvalidMappingError):
            orchestrator.start_import(catalog_rows, {"product_name": 1, "purchase_price": 2}, FilterConfig(), "sup-1")
        assert processor.calls == []
        assert job_store.list_jobs(db) == []

    def test_degenerate_outcome_is_flagged(self, make_orchestrator, catalog_rows, db):
        orchestrator, _ = make_orchestrator()
        # The name column is always empty, so every row lacks a name.
        mapping = {"supplier_reference": 0, "product_name": 5, "purchase_price": 2}
        rows = [catalog_rows[0] + ["Remarque"]] + [row + [""] for row in catalog_rows[1:]]

        handle = orchestrator.start_import(rows, mapping, FilterConfig(), "sup-1", has_header=True)

        assert handle.success == 0
        assert handle.skipped == 250
        assert handle.outcome is ImportOutcome.NO_PRODUCTS_INVALID_MAPPING

    def test_mapping_past_included_columns_is_refused(self, make_orchestrator, catalog_rows, db):
        orchestrator, processor = make_orchestrator()
        # "Stock" is excluded, so only four columns remain and index 4 no longer exists.
        mapping = {"supplier_reference": 0, "product_name": 4, "purchase_price": 2}

        with pytest.raises(InvalidMappingError):
            orchestrator.start_import(catalog_rows, mapping, FilterConfig(excluded_columns=["Stock"]), "sup-1")
        assert processor.calls == []
        assert job_store.list_jobs(db) == []

    def test_profile_saved_as_single_default(self, make_orchestrator, catalog_rows, catalog_mapping, db):
        orchestrator, _ = make_orchestrator()
        config = FilterConfig(skip_rows_bottom=1, excluded_columns=[])
        orchestrator.start_import(catalog_rows, catalog_mapping, config, "sup-1")
        orchestrator.start_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1")

        profile = get_default_profile(db, "sup-1")
        assert profile.skip_config["skip_rows_bottom"] == 0
        assert profile.column_mapping["ean"] == 3

    def test_split_chunks(self):
        assert [len(c) for c in split_chunks(list(range(250)), 100)] == [100, 100, 50]
        assert split_chunks([], 100) == []


class TestFileVariant:

    def test_job_queued_then_processed_by_worker(self, make_orchestrator, catalog_rows, catalog_mapping, session_factory, db, monkeypatch):
        orchestrator, processor = make_orchestrator()
        enqueue = MagicMock()

        handle = orchestrator.start_file_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1", enqueue=enqueue)

        job = job_store.get_job(db, handle.job_id)
        assert job.status == JOB_QUEUED
        assert job.source == "file"
        job_id, path = enqueue.call_args.args

        monkeypatch.setattr("supplier_import.workers.tasks.import_jobs.get_fresh_session", session_factory)
        payload = import_supplier_file_task.run(job_id, path)

        assert payload["status"] == JOB_COMPLETED
        assert payload["new_records"] == 250
        assert processor.calls == []

    def test_enqueue_failure_fails_the_job(self, make_orchestrator, catalog_rows, catalog_mapping, db):
        orchestrator, _ = make_orchestrator()
        enqueue = MagicMock(side_effect=ConnectionError("broker down"))

        handle = orchestrator.start_file_import(catalog_rows, catalog_mapping, FilterConfig(), "sup-1", enqueue=enqueue)

        assert handle.status == HANDLE_ERROR
        assert job_store.get_job(db, handle.job_id).status == JOB_FAILED

    def test_refused_mapping_leaves_no_staged_file(self, make_orchestrator, catalog_rows):
        orchestrator, _ = make_orchestrator()
        enqueue = MagicMock()
        before = set(UPLOADS_DIR.iterdir())

        with pytest.raises(InvalidMappingError):
            orchestrator.start_file_import(
                catalog_rows,
                {"supplier_reference": 0, "product_name": 4, "purchase_price": 2},
                FilterConfig(excluded_columns=["Stock"]),
                "sup-1",
                enqueue=enqueue,
            )
        enqueue.assert_not_called()
        assert set(UPLOADS_DIR.iterdir()) == before


class TestChunkedWorker:

    def test_staged_blank_row_is_counted_and_skipped(self, session_factory, catalog_mapping, db, monkeypatch):
        raw = [
            CATALOG_HEADER + ["Remarque"],
            catalog_row(1) + [""],
            ["", "", "", "", "", "voir page 2"],
            catalog_row(2) + [""],
        ]
        config = FilterConfig(excluded_columns=["Remarque"])
        dataset = prepare_dataset(raw, config, has_header=True)
        handle = ImportOrchestrator(session_factory).prepare(
            dataset.rows, catalog_mapping, config, "sup-1", column_count=len(dataset.labels)
        )
        staged = write_staged_rows(dataset.labels, dataset.rows)

        monkeypatch.setattr("supplier_import.workers.tasks.import_jobs.get_fresh_session", session_factory)
        result = run_chunked_import_task.run(handle.job_id, str(staged))

        assert result["status"] == HANDLE_COMPLETED
        db.expire_all()
        job = job_store.get_job(db, handle.job_id)
        assert job.status == JOB_COMPLETED
        assert job.processed_rows == job.total_rows == 3
        assert job.new_records == 2
        assert job.skipped == 1
        assert not staged.exists()

    def test_missing_staged_file_fails_the_job(self, session_factory, catalog_rows, catalog_mapping, db, monkeypatch, tmp_path):
        dataset = prepare_dataset(catalog_rows, FilterConfig())
        handle = ImportOrchestrator(session_factory).prepare(dataset.rows, catalog_mapping, FilterConfig(), "sup-1")

        monkeypatch.setattr("supplier_import.workers.tasks.import_jobs.get_fresh_session", session_factory)
        with pytest.raises(ValueError):
            run_chunked_import_task.run(handle.job_id, str(tmp_path / "gone.csv"))

        db.expire_all()
        assert job_store.get_job(db, handle.job_id).status == JOB_FAILED


class TestProcessorLifetime:

    def test_owned_http_processor_is_closed(self, session_factory, monkeypatch):
        monkeypatch.setattr(get_settings(), "chunk_backend_url", "http://chunks.test")

        with ImportOrchestrator(session_factory) as orchestrator:
            processor = orchestrator.processor
            assert isinstance(processor, HttpChunkProcessor)
            assert not processor._client.is_closed

        assert processor._client.is_closed

    def test_injected_processor_is_left_open(self, session_factory):
        processor = MagicMock()
        with ImportOrchestrator(session_factory, processor) as orchestrator:
            assert orchestrator.processor is processor
        processor.close.assert_not_called()

    def test_prepare_builds_no_processor(self, session_factory, catalog_rows, catalog_mapping):
        orchestrator = ImportOrchestrator(session_factory)
        dataset = prepare_dataset(catalog_rows, FilterConfig())
        orchestrator.prepare(dataset.rows, catalog_mapping, FilterConfig(), "sup-1")
        assert orchestrator._processor is None
