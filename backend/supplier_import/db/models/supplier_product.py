"""SQLAlchemy model for normalized supplier catalog records."""

from sqlalchemy import Column, Index, Integer, Numeric, String, Text, func
from sqlalchemy.types import DateTime

from supplier_import.db.base import Base


class SupplierProduct(Base):
    __tablename__ = "supplier_products"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64))
    supplier_id = Column(String(64), nullable=False, index=True)
    ean = Column(String(32), index=True)
    supplier_reference = Column(String(128), index=True)
    product_name = Column(String(512), nullable=False)
    purchase_price = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    stock_quantity = Column(Integer)
    description = Column(Text)
    brand = Column(String(255))
    category = Column(String(255))
    enrichment_status = Column(String(32), nullable=False, default="pending")
    last_import_job_id = Column(String(36))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_supplier_products_supplier_ean", supplier_id, ean),
        Index("ix_supplier_products_supplier_ref", supplier_id, supplier_reference),
    )
