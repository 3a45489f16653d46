"""Mapping wizard and supplier profile payloads."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class FilterConfigIn(BaseModel):
    skip_rows_top: int = Field(0, ge=0)
    skip_rows_bottom: int = Field(0, ge=0)
    skip_patterns: list[str] = Field(default_factory=list)
    excluded_columns: list[str] = Field(default_factory=list)


class FilterSummaryOut(BaseModel):
    total_rows: int
    filtered_rows: int
    ignored_rows_count: int
    ignored_ratio: float
    ignored_percent: int
    is_aggressive: bool


class HeaderChoiceOut(BaseModel):
    has_header: bool
    header_row_index: int | None
    skip_rows: int
    low_confidence: bool
    warnings: list[str] = Field(default_factory=list)


class MappingPreviewOut(BaseModel):
    header: HeaderChoiceOut
    detected_columns: list[str]
    included_columns: list[str]
    mapping: dict[str, int | None]
    confidence: dict[str, int]
    quality: float
    summary: FilterSummaryOut
    preview_rows: list[list[str | int | float | bool | None]]
    missing_required: list[str]
    missing_for_import: list[str]
    can_continue: bool
    can_import: bool
    warnings: list[str] = Field(default_factory=list)


class ProfileIn(BaseModel):
    profile_name: str | None = None
    source_type: str = "file"
    owner_id: str | None = None
    column_mapping: dict[str, int | None]
    filter_config: FilterConfigIn = Field(default_factory=FilterConfigIn)

    @field_validator("source_type")
    @classmethod
    def check_source(cls, v: str) -> str:
        if v not in ("file", "email", "api"):
            raise ValueError("source_type must be file, email or api")
        return v


class ProfileOut(BaseModel):
    id: int
    supplier_id: str
    profile_name: str
    source_type: str
    is_default: bool
    column_mapping: dict[str, int | None]
    filter_config: FilterConfigIn
    updated_at: datetime | None = None
    created_at: datetime | None = None
