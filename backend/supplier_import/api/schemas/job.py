"""Import job and progress payloads."""

from datetime import datetime

from pydantic import BaseModel, Field


class JobStatus(BaseModel):
    id: str
    supplier_id: str
    source: str = Field("chunked", description="chunked|file")
    status: str = Field(..., description="queued|processing|completed|failed")
    total_rows: int = 0
    processed_rows: int = 0
    current_chunk_index: int = 0
    chunk_size: int | None = None
    matched: int = 0
    new_records: int = 0
    skipped: int = 0
    failed: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ProgressSnapshotOut(BaseModel):
    target: str = Field(..., description="inbox|job")
    record_id: str
    status: str
    processed: int
    total: int
    success: int
    skipped: int
    errors: int
    progress: float = Field(..., description="0-1 range for UI progress bars")
    message: str | None = None
    error_message: str | None = None
    outcome: str | None = Field(
        None, description="success|no-products-invalid-mapping|no-products-other|failed"
    )
    remediation: str | None = None
    updated_at: datetime


class ImportHandleOut(BaseModel):
    job_id: str
    supplier_id: str
    status: str
    total_rows: int
    chunk_size: int
    processed_rows: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    chunks_sent: int = 0
    operation: str | None = None
    error_message: str | None = None
    outcome: str | None = None
    remediation: str | None = None
    last_update_at: datetime


class ChunkIn(BaseModel):
    chunk_index: int = Field(..., ge=0)
    chunk_rows: list[list[str | int | float | bool | None]]
    column_mapping: dict[str, int | None]
    supplier_id: str


class ChunkStatsOut(BaseModel):
    new: int
    matched: int
    failed: int
    skipped: int


class ChunkOut(BaseModel):
    success: bool = True
    chunk_index: int
    processed: int
    total_processed: int
    total: int
    is_complete: bool
    replayed: bool = False
    stats: ChunkStatsOut
