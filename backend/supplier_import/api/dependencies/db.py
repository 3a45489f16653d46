"""Database session dependencies."""

from collections.abc import Callable, Generator

from sqlalchemy.orm import Session

from supplier_import.db.session import get_db, get_fresh_session


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a managed SQLAlchemy session."""
    yield from get_db()


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives one request (chunks, streams)."""
    return get_fresh_session
