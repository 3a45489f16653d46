"""Mapping wizard preview and supplier profile endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supplier_import.api.dependencies.db import get_session
from supplier_import.api.routers.job_helpers import (
    parse_filter_field,
    parse_json_field,
    read_upload_rows,
    serialize_preview,
    serialize_profile,
    to_filter_config,
)
from supplier_import.api.schemas.mapping import MappingPreviewOut, ProfileIn, ProfileOut
from supplier_import.services.mapping_preview import build_preview
from supplier_import.services.profile_service import (
    get_default_profile,
    profile_filter_config,
    save_default_profile,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/mappings/preview",
    summary="Detect header, apply filters and suggest a column mapping",
    response_model=MappingPreviewOut,
)
async def preview_mapping(
    file: UploadFile = File(...),
    supplier_id: str | None = Form(None, description="Load this supplier's default profile"),
    filter_config: str | None = Form(None, description="JSON FilterConfig; overrides the profile"),
    column_mapping: str | None = Form(None, description="JSON mapping; overrides the profile"),
    has_header: bool | None = Form(None),
    delimiter: str | None = Form(None),
    db: Session = Depends(get_session),
) -> MappingPreviewOut:
    """Rerun on every wizard change; filters and mapping are recomputed each time."""
    raw_rows = await read_upload_rows(file, delimiter)

    profile = get_default_profile(db, supplier_id) if supplier_id else None
    config = parse_filter_field(filter_config) if filter_config else profile_filter_config(profile)
    mapping = parse_json_field(column_mapping, "column_mapping")
    if mapping is None and profile is not None:
        mapping = profile.column_mapping

    preview = build_preview(raw_rows, config, has_header=has_header, mapping=mapping)
    logger.info(
        f"Preview for {file.filename}: header={preview.header.header_row_index} "
        f"rows={preview.summary.filtered_rows}/{preview.summary.total_rows} quality={preview.quality:.0f}"
    )
    return serialize_preview(preview)


@router.get(
    "/suppliers/{supplier_id}/profile",
    summary="Default mapping profile of a supplier",
    response_model=ProfileOut,
)
async def get_profile(
    supplier_id: str,
    db: Session = Depends(get_session),
) -> ProfileOut:
    profile = get_default_profile(db, supplier_id)
    if not profile:
        raise HTTPException(status_code=404, detail="No mapping profile for this supplier")
    return serialize_profile(profile)


@router.put(
    "/suppliers/{supplier_id}/profile",
    summary="Create or replace the default mapping profile",
    response_model=ProfileOut,
)
async def put_profile(
    supplier_id: str,
    payload: ProfileIn,
    db: Session = Depends(get_session),
) -> ProfileOut:
    try:
        profile = save_default_profile(
            db,
            supplier_id,
            payload.column_mapping,
            to_filter_config(payload.filter_config),
            owner_id=payload.owner_id,
            profile_name=payload.profile_name,
            source_type=payload.source_type,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save mapping profile",
        ) from exc
    return serialize_profile(profile)
