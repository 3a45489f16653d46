"""Saved, supplier-scoped filter + column mapping combinations."""

from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from supplier_import.db.base import Base, JSONType


class MappingProfile(Base):
    __tablename__ = "supplier_mapping_profiles"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64))
    supplier_id = Column(String(64), nullable=False, index=True)
    profile_name = Column(String(255), nullable=False)
    source_type = Column(String(16), nullable=False, default="file")
    skip_config = Column(JSONType, nullable=False, default=dict)
    excluded_columns = Column(JSONType, nullable=False, default=list)
    column_mapping = Column(JSONType, nullable=False, default=dict)
    is_default = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
