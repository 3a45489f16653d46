"""Legacy inbox entry whose progress lives in an embedded log list."""

import uuid

from sqlalchemy import Column, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from supplier_import.db.base import Base, JSONType


class InboxRecord(Base):
    __tablename__ = "email_inbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64))
    supplier_id = Column(String(64), index=True)
    attachment_name = Column(Text)
    attachment_url = Column(Text)
    status = Column(String(32), nullable=False, default="pending")
    processing_logs = Column(JSONType, nullable=False, default=list)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
