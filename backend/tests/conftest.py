"""
Shared test fixtures.

Tests run against an in-memory SQLite database and a mocked Redis client;
no broker, database server or Redis instance is needed.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Settings are cached on first use; point them at throwaway resources first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOADS_DIR"] = tempfile.mkdtemp(prefix="supplier-import-tests-")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from supplier_import.db.base import Base
import supplier_import.db.models  # noqa: F401  (registers tables)
from supplier_import.services import progress_tracker


# ===================
# DATABASE
# ===================

@pytest.fixture
def engine():
    """Fresh in-memory database per test, shared by every session."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ===================
# REDIS
# ===================

@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Replace the module-level Redis client; nothing is cached or pushed."""
    client = MagicMock()
    client.get.return_value = None
    monkeypatch.setattr(progress_tracker, "redis_client", client)
    return client


@pytest.fixture
def published():
    """Recorder usable as the ``publish`` callback of processors and orchestrators."""
    calls = []

    def publish(kind, record_id, payload):
        calls.append((kind, record_id, payload))

    publish.calls = calls
    return publish


# ===================
# SAMPLE DATA
# ===================

CATALOG_HEADER = ["Référence", "Désignation", "Prix HT", "EAN", "Stock"]


def catalog_row(n: int) -> list:
    return [f"REF-{n:04d}", f"Produit {n}", f"{10 + n},50", f"3760000{n:06d}", n % 7]


@pytest.fixture
def catalog_rows():
    """Header + 250 data rows."""
    return [CATALOG_HEADER] + [catalog_row(n) for n in range(1, 251)]


@pytest.fixture
def catalog_mapping():
    """Mapping over ``CATALOG_HEADER`` columns."""
    return {
        "supplier_reference": 0,
        "product_name": 1,
        "purchase_price": 2,
        "ean": 3,
        "stock_quantity": 4,
    }
