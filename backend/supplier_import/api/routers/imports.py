"""Endpoints starting supplier imports and accepting chunk calls."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError

from supplier_import.api.dependencies.db import get_session_factory
from supplier_import.api.routers.job_helpers import (
    parse_filter_field,
    parse_json_field,
    read_upload_rows,
)
from supplier_import.api.schemas.job import ChunkIn, ChunkOut, ImportHandleOut
from supplier_import.core.errors import InvalidJobTransition, InvalidMappingError, JobNotFoundError
from supplier_import.services.chunk_processing import ChunkRequest, LocalChunkProcessor
from supplier_import.services.import_orchestrator import ImportOrchestrator
from supplier_import.services.mapping_preview import prepare_dataset
from supplier_import.services.staged_files import write_staged_rows
from supplier_import.storage.uploads import delete_upload
from supplier_import.workers.tasks.import_jobs import run_chunked_import_task

logger = logging.getLogger(__name__)

router = APIRouter()


def _mapping_error(exc: InvalidMappingError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(exc), "missing_fields": exc.missing, "policy": exc.policy},
    )


@router.post(
    "/",
    summary="Start a chunked supplier import",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportHandleOut,
)
async def enqueue_import(
    file: UploadFile = File(...),
    supplier_id: str = Form(...),
    column_mapping: str = Form(..., description="JSON object {field: column index}"),
    filter_config: str | None = Form(None, description="JSON FilterConfig"),
    has_header: bool | None = Form(None),
    delimiter: str | None = Form(None),
    owner_id: str | None = Form(None),
    session_factory=Depends(get_session_factory),
) -> ImportHandleOut:
    """Save the mapping as the supplier default, create the job and queue its chunks."""
    raw_rows = await read_upload_rows(file, delimiter)
    mapping = parse_json_field(column_mapping, "column_mapping") or {}
    config = parse_filter_field(filter_config)

    dataset = prepare_dataset(raw_rows, config, has_header)
    orchestrator = ImportOrchestrator(session_factory)
    try:
        handle = orchestrator.prepare(
            dataset.rows,
            mapping,
            config,
            supplier_id,
            owner_id=owner_id,
            column_count=len(dataset.labels),
        )
    except InvalidMappingError as exc:
        raise _mapping_error(exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error creating import for supplier {supplier_id}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc

    staged = None
    try:
        staged = write_staged_rows(dataset.labels, dataset.rows)
        run_chunked_import_task.apply_async(args=(handle.job_id, str(staged)), queue="imports")
    except Exception as exc:
        logger.error(f"Error enqueueing import task {handle.job_id}: {exc}", exc_info=True)
        if staged is not None:
            delete_upload(staged)
        handle = orchestrator.abort(handle, f"Failed to start import process: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc

    logger.info(f"Queued chunked import {handle.job_id} for file {file.filename}")
    return ImportHandleOut(**handle.to_dict())


@router.post(
    "/file",
    summary="Hand a whole delimited file to a worker",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportHandleOut,
)
async def enqueue_file_import(
    file: UploadFile = File(...),
    supplier_id: str = Form(...),
    column_mapping: str = Form(...),
    filter_config: str | None = Form(None),
    has_header: bool | None = Form(None),
    delimiter: str | None = Form(None),
    owner_id: str | None = Form(None),
    session_factory=Depends(get_session_factory),
) -> ImportHandleOut:
    """Same job contract as the chunked import; the worker does the chunking."""
    raw_rows = await read_upload_rows(file, delimiter)
    mapping = parse_json_field(column_mapping, "column_mapping") or {}
    config = parse_filter_field(filter_config)

    orchestrator = ImportOrchestrator(session_factory)
    try:
        handle = orchestrator.start_file_import(
            raw_rows, mapping, config, supplier_id, has_header=has_header, owner_id=owner_id
        )
    except InvalidMappingError as exc:
        raise _mapping_error(exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error creating file import for supplier {supplier_id}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc

    if handle.status == "error":
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=handle.error_message,
        )
    return ImportHandleOut(**handle.to_dict())


@router.post(
    "/{job_id}/chunks",
    summary="Apply one chunk of rows to an import job",
    response_model=ChunkOut,
)
def process_chunk(
    job_id: str,
    payload: ChunkIn,
    session_factory=Depends(get_session_factory),
) -> ChunkOut:
    """Chunk processing endpoint; replaying an applied chunk index is harmless."""
    processor = LocalChunkProcessor(session_factory)
    try:
        result = processor.process_chunk(
            ChunkRequest(
                job_id=job_id,
                chunk_index=payload.chunk_index,
                chunk_rows=payload.chunk_rows,
                column_mapping=payload.column_mapping,
                supplier_id=payload.supplier_id,
            )
        )
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to apply chunk: {exc}",
        ) from exc
    return ChunkOut(**result.to_json())
