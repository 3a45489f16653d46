"""Database models package."""
from supplier_import.db.models.supplier_product import SupplierProduct
from supplier_import.db.models.import_job import ImportJob
from supplier_import.db.models.inbox_record import InboxRecord
from supplier_import.db.models.mapping_profile import MappingProfile

__all__ = ["SupplierProduct", "ImportJob", "InboxRecord", "MappingProfile"]
