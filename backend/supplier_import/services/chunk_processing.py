"""Chunk processing backend: match, create or update supplier products.

``LocalChunkProcessor`` applies chunks in-process against the database;
``HttpChunkProcessor`` sends them to a remote service exposing the same
contract. Both are safe to retry: a chunk index already applied to a job is
acknowledged with the job's current counters and never applied twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Protocol, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supplier_import.core.config import get_settings
from supplier_import.core.errors import ChunkTransportError, InvalidJobTransition
from supplier_import.db.models.import_job import JOB_COMPLETED, JOB_PROCESSING, ImportJob
from supplier_import.db.models.supplier_product import SupplierProduct
from supplier_import.services.job_store import get_job, job_payload, transition_job
from supplier_import.services.progress_tracker import publish_record_update
from supplier_import.utils.cells import cell_at, cell_text, is_blank

logger = logging.getLogger(__name__)

# Upper bound of the INTEGER stock column.
MAX_STOCK = 2_147_483_647


@dataclass
class ChunkRequest:
    job_id: str
    chunk_index: int
    chunk_rows: Sequence[Sequence[Any]]
    column_mapping: Mapping[str, int | None]
    supplier_id: str

    def to_json(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "chunk_index": self.chunk_index,
            "chunk_rows": [[_jsonable(cell) for cell in row] for row in self.chunk_rows],
            "column_mapping": dict(self.column_mapping),
            "supplier_id": self.supplier_id,
        }


@dataclass
class ChunkStats:
    """Counters accumulated on the job so far (not just this chunk)."""

    new: int = 0
    matched: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def success(self) -> int:
        return self.new + self.matched


@dataclass
class ChunkResult:
    chunk_index: int
    processed: int
    total_processed: int
    total: int
    is_complete: bool
    stats: ChunkStats = field(default_factory=ChunkStats)
    replayed: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "success": True,
            "chunk_index": self.chunk_index,
            "processed": self.processed,
            "total_processed": self.total_processed,
            "total": self.total,
            "is_complete": self.is_complete,
            "replayed": self.replayed,
            "stats": {
                "new": self.stats.new,
                "matched": self.stats.matched,
                "failed": self.stats.failed,
                "skipped": self.stats.skipped,
            },
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ChunkResult":
        stats = data.get("stats") or {}
        return cls(
            chunk_index=int(data.get("chunk_index", 0)),
            processed=int(data.get("processed", 0)),
            total_processed=int(data.get("total_processed", 0)),
            total=int(data.get("total", 0)),
            is_complete=bool(data.get("is_complete", False)),
            replayed=bool(data.get("replayed", False)),
            stats=ChunkStats(
                new=int(stats.get("new", 0)),
                matched=int(stats.get("matched", 0)),
                failed=int(stats.get("failed", 0)),
                skipped=int(stats.get("skipped", 0)),
            ),
        )


class ChunkProcessor(Protocol):
    def process_chunk(self, request: ChunkRequest) -> ChunkResult: ...


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return cell_text(value)


def _text(row: Sequence[Any], mapping: Mapping[str, int | None], name: str) -> str | None:
    index = mapping.get(name)
    if index is None:
        return None
    value = cell_at(row, index)
    if is_blank(value):
        return None
    return cell_text(value).strip()


def parse_price(value: str | None) -> Decimal | None:
    """Accept ``12,50``, ``1 234.5`` and a trailing currency sign."""
    if value is None:
        return None
    cleaned = value.replace("\xa0", "").replace(" ", "").replace("\u20ac", "").replace("EUR", "")
    cleaned = cleaned.replace(",", ".")
    try:
        price = Decimal(cleaned)
    except InvalidOperation:
        return None
    return price if price.is_finite() else None


def parse_stock(value: str | None) -> int | None:
    """Whole units; unreadable or out-of-range quantities are left empty."""
    if value is None:
        return None
    try:
        stock = int(float(value.replace(",", ".").replace(" ", "")))
    except (ValueError, OverflowError):
        return None
    return stock if abs(stock) <= MAX_STOCK else None


@dataclass
class RowOutcome:
    new: int = 0
    matched: int = 0
    failed: int = 0
    skipped: int = 0


class LocalChunkProcessor:
    """Apply chunks through SQLAlchemy, one short-lived session per chunk."""

    def __init__(self, session_factory: Callable[[], Session], publish: Callable[..., None] = publish_record_update):
        self._session_factory = session_factory
        self._publish = publish

    def process_chunk(self, request: ChunkRequest) -> ChunkResult:
        db = self._session_factory()
        try:
            job = get_job(db, request.job_id)
            applied = list(job.applied_chunks or [])

            if request.chunk_index in applied:
                logger.info(f"Chunk {request.chunk_index} of job {job.id} already applied; replaying result")
                return self._result(job, request.chunk_index, processed=0, replayed=True)

            if job.status != JOB_PROCESSING:
                raise InvalidJobTransition(job.id, job.status, JOB_PROCESSING)

            outcome = self.apply_rows(db, job, request.chunk_rows, request.column_mapping)

            job.processed_rows = (job.processed_rows or 0) + len(request.chunk_rows)
            job.current_chunk_index = max(job.current_chunk_index or 0, request.chunk_index + 1)
            job.new_records = (job.new_records or 0) + outcome.new
            job.matched = (job.matched or 0) + outcome.matched
            job.failed = (job.failed or 0) + outcome.failed
            job.skipped = (job.skipped or 0) + outcome.skipped
            job.applied_chunks = applied + [request.chunk_index]

            if job.processed_rows >= (job.total_rows or 0):
                transition_job(job, JOB_COMPLETED)
                logger.info(
                    f"Import {job.id} completed: total={job.total_rows} new={job.new_records} "
                    f"matched={job.matched} skipped={job.skipped} failed={job.failed}"
                )

            db.commit()
            db.refresh(job)
            self._publish("job", job.id, job_payload(job))
            return self._result(job, request.chunk_index, processed=len(request.chunk_rows))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error applying chunk {request.chunk_index} of job {request.job_id}: {e}", exc_info=True)
            raise
        finally:
            db.close()

    @staticmethod
    def _result(job: ImportJob, chunk_index: int, processed: int, replayed: bool = False) -> ChunkResult:
        return ChunkResult(
            chunk_index=chunk_index,
            processed=processed,
            total_processed=job.processed_rows or 0,
            total=job.total_rows or 0,
            is_complete=job.status == JOB_COMPLETED,
            replayed=replayed,
            stats=ChunkStats(
                new=job.new_records or 0,
                matched=job.matched or 0,
                failed=job.failed or 0,
                skipped=job.skipped or 0,
            ),
        )

    def apply_rows(
        self,
        db: Session,
        job: ImportJob,
        rows: Sequence[Sequence[Any]],
        mapping: Mapping[str, int | None],
    ) -> RowOutcome:
        outcome = RowOutcome()
        for row in rows:
            ean = _text(row, mapping, "ean")
            reference = _text(row, mapping, "supplier_reference")
            name = _text(row, mapping, "product_name")
            price = parse_price(_text(row, mapping, "purchase_price"))

            if not ean and not reference:
                outcome.skipped += 1
                continue
            if not name or price is None:
                outcome.skipped += 1
                continue

            values = {
                "product_name": name,
                "purchase_price": price,
                "description": _text(row, mapping, "description"),
                "stock_quantity": parse_stock(_text(row, mapping, "stock_quantity")),
                "brand": _text(row, mapping, "brand"),
                "category": _text(row, mapping, "category"),
            }

            try:
                with db.begin_nested():
                    existing = self._find_existing(db, job.supplier_id, ean, reference)
                    if existing:
                        for key, value in values.items():
                            if value is not None:
                                setattr(existing, key, value)
                        if ean and not existing.ean:
                            existing.ean = ean
                        if reference and not existing.supplier_reference:
                            existing.supplier_reference = reference
                        existing.last_import_job_id = job.id
                        outcome.matched += 1
                    else:
                        db.add(
                            SupplierProduct(
                                owner_id=job.owner_id,
                                supplier_id=job.supplier_id,
                                ean=ean,
                                supplier_reference=reference,
                                last_import_job_id=job.id,
                                **values,
                            )
                        )
                        outcome.new += 1
                    db.flush()
            except SQLAlchemyError as e:
                logger.warning(f"Row failed for job {job.id} (ean={ean}, ref={reference}): {e}")
                outcome.failed += 1
        return outcome

    @staticmethod
    def _find_existing(db: Session, supplier_id: str, ean: str | None, reference: str | None) -> SupplierProduct | None:
        query = select(SupplierProduct).where(SupplierProduct.supplier_id == supplier_id)
        if ean:
            query = query.where(SupplierProduct.ean == ean)
        else:
            query = query.where(SupplierProduct.supplier_reference == reference)
        return db.scalars(query.limit(1)).first()


class HttpChunkProcessor:
    """Post chunks to a remote processor at ``{base_url}/{job_id}/chunks``."""

    def __init__(self, base_url: str, timeout: float | None = None, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def process_chunk(self, request: ChunkRequest) -> ChunkResult:
        url = f"{self.base_url}/{request.job_id}/chunks"
        try:
            response = self._client.post(url, json=request.to_json())
        except httpx.TimeoutException as e:
            raise ChunkTransportError(request.job_id, request.chunk_index, f"Chunk request timed out: {e}") from e
        except httpx.RequestError as e:
            raise ChunkTransportError(request.job_id, request.chunk_index, f"Chunk request failed: {e}") from e

        if not response.is_success:
            raise ChunkTransportError(request.job_id, request.chunk_index, _error_message(response))

        try:
            data = response.json()
        except ValueError as e:
            raise ChunkTransportError(request.job_id, request.chunk_index, "Chunk response is not JSON") from e
        if data.get("success") is False:
            raise ChunkTransportError(request.job_id, request.chunk_index, str(data.get("error") or "Unknown error"))
        return ChunkResult.from_json(data)

    def close(self) -> None:
        self._client.close()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(data, dict):
        detail = data.get("error") or data.get("detail")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"


def default_processor(session_factory: Callable[[], Session]) -> ChunkProcessor:
    """Remote processor when configured, in-process otherwise."""
    settings = get_settings()
    if settings.chunk_backend_url:
        return HttpChunkProcessor(settings.chunk_backend_url, timeout=settings.chunk_timeout_seconds)
    return LocalChunkProcessor(session_factory)
