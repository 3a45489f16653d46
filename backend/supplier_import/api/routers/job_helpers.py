"""Shared helpers for shaping job, progress and mapping responses."""
from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException, UploadFile, status

from supplier_import.api.schemas.job import JobStatus, ProgressSnapshotOut
from supplier_import.api.schemas.mapping import (
    FilterConfigIn,
    FilterSummaryOut,
    HeaderChoiceOut,
    MappingPreviewOut,
    ProfileOut,
)
from supplier_import.core.errors import TableParseError
from supplier_import.db.models.import_job import ImportJob
from supplier_import.db.models.mapping_profile import MappingProfile
from supplier_import.services.mapping_preview import MappingPreview
from supplier_import.services.progress_reconciler import ProgressSnapshot
from supplier_import.services.row_filter import FilterConfig
from supplier_import.utils.cells import cell_text
from supplier_import.utils.table_loader import parse_spreadsheet


def serialize_job(job: ImportJob) -> JobStatus:
    return JobStatus(
        id=job.id,
        supplier_id=job.supplier_id,
        source=job.source or "chunked",
        status=job.status,
        total_rows=job.total_rows or 0,
        processed_rows=job.processed_rows or 0,
        current_chunk_index=job.current_chunk_index or 0,
        chunk_size=job.chunk_size,
        matched=job.matched or 0,
        new_records=job.new_records or 0,
        skipped=job.skipped or 0,
        failed=job.failed or 0,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


def serialize_snapshot(snapshot: ProgressSnapshot) -> ProgressSnapshotOut:
    return ProgressSnapshotOut(**snapshot.to_dict())


def _plain(cell: Any) -> Any:
    if cell is None or isinstance(cell, (str, int, float, bool)):
        return cell
    return cell_text(cell)


def serialize_preview(preview: MappingPreview) -> MappingPreviewOut:
    summary = preview.summary
    header = preview.header
    return MappingPreviewOut(
        header=HeaderChoiceOut(
            has_header=header.has_header,
            header_row_index=header.header_row_index,
            skip_rows=header.skip_rows,
            low_confidence=header.low_confidence,
            warnings=header.warnings,
        ),
        detected_columns=preview.detected_columns,
        included_columns=preview.included_columns,
        mapping=preview.mapping,
        confidence=preview.confidence,
        quality=preview.quality,
        summary=FilterSummaryOut(
            total_rows=summary.total_rows,
            filtered_rows=summary.filtered_rows,
            ignored_rows_count=summary.ignored_rows_count,
            ignored_ratio=summary.ignored_ratio,
            ignored_percent=summary.ignored_percent,
            is_aggressive=summary.is_aggressive,
        ),
        preview_rows=[[_plain(cell) for cell in row] for row in preview.preview_rows],
        missing_required=preview.missing_required,
        missing_for_import=preview.missing_for_import,
        can_continue=preview.can_continue,
        can_import=preview.can_import,
        warnings=preview.warnings,
    )


def serialize_profile(profile: MappingProfile) -> ProfileOut:
    skip_config = profile.skip_config or {}
    return ProfileOut(
        id=profile.id,
        supplier_id=profile.supplier_id,
        profile_name=profile.profile_name,
        source_type=profile.source_type,
        is_default=bool(profile.is_default),
        column_mapping=profile.column_mapping or {},
        filter_config=FilterConfigIn(
            skip_rows_top=skip_config.get("skip_rows_top", 0),
            skip_rows_bottom=skip_config.get("skip_rows_bottom", 0),
            skip_patterns=skip_config.get("skip_patterns") or [],
            excluded_columns=profile.excluded_columns or [],
        ),
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


def to_filter_config(payload: FilterConfigIn | None) -> FilterConfig:
    if payload is None:
        return FilterConfig()
    return FilterConfig(**payload.model_dump())


def parse_json_field(raw: str | None, name: str) -> Any:
    """Decode a JSON-encoded multipart form field; blank means absent."""
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Field '{name}' is not valid JSON",
        ) from exc


def parse_filter_field(raw: str | None) -> FilterConfig:
    data = parse_json_field(raw, "filter_config")
    if data is None:
        return FilterConfig()
    try:
        return to_filter_config(FilterConfigIn.model_validate(data))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid filter_config: {exc}",
        ) from exc


async def read_upload_rows(file: UploadFile, delimiter: str | None = None) -> list[list[Any]]:
    """Read an uploaded spreadsheet into raw rows or answer 400."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    await file.seek(0)
    content = await file.read()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty",
        )
    try:
        return parse_spreadsheet(content, filename=file.filename, delimiter=delimiter)
    except TableParseError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
