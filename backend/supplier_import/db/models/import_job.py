"""Track supplier import runs and their accumulated counters."""

import uuid

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from supplier_import.db.base import Base, JSONType

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED})


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64))
    supplier_id = Column(String(64), nullable=False, index=True)
    source = Column(String(32), nullable=False, default="chunked")
    status = Column(String(32), nullable=False, default=JOB_QUEUED)
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    current_chunk_index = Column(Integer, nullable=False, default=0)
    chunk_size = Column(Integer, nullable=False, default=100)
    matched = Column(Integer, nullable=False, default=0)
    new_records = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    links_created = Column(Integer, nullable=False, default=0)
    unlinked_records = Column(Integer, nullable=False, default=0)
    column_mapping = Column(JSONType)
    applied_chunks = Column(JSONType)
    uploaded_file_path = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
