"""Merge push and poll updates from inbox and job records into one progress view.

Two dumb producers (a pub/sub listener and a poll timer) feed
``ProgressReconciler.reconcile``. The reconciler owns ordering and
de-duplication: counters never go backwards, a terminal snapshot is final,
and terminal side effects fire once no matter how many producers deliver it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from supplier_import.core.config import get_settings
from supplier_import.services.job_store import get_inbox_record, get_job, inbox_payload, job_payload
from supplier_import.services.outcomes import ImportOutcome, classify_outcome, remediation_message

logger = logging.getLogger(__name__)

TERMINAL = frozenset({"completed", "failed"})
STATUS_RANK = {"queued": 0, "processing": 1, "completed": 2, "failed": 2}
INBOX_STATUS = {
    "pending": "queued",
    "queued": "queued",
    "processing": "processing",
    "completed": "completed",
    "failed": "failed",
    "error": "failed",
}


class TrackingTarget(str, Enum):
    INBOX = "inbox"
    JOB = "job"


@dataclass(frozen=True)
class JobUpdate:
    job_id: str
    status: str
    total_rows: int = 0
    processed_rows: int = 0
    matched: int = 0
    new_records: int = 0
    skipped: int = 0
    failed: int = 0
    error_message: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "JobUpdate":
        return cls(
            job_id=str(payload["id"]),
            status=str(payload.get("status") or "queued"),
            total_rows=int(payload.get("total_rows") or 0),
            processed_rows=int(payload.get("processed_rows") or 0),
            matched=int(payload.get("matched") or 0),
            new_records=int(payload.get("new_records") or 0),
            skipped=int(payload.get("skipped") or 0),
            failed=int(payload.get("failed") or 0),
            error_message=payload.get("error_message"),
        )


@dataclass(frozen=True)
class InboxUpdate:
    """Legacy inbox record; progress lives in its ``processing_logs`` entries."""

    record_id: str
    status: str
    logs: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InboxUpdate":
        return cls(
            record_id=str(payload["id"]),
            status=str(payload.get("status") or "pending"),
            logs=tuple(payload.get("processing_logs") or ()),
        )

    def referenced_job_id(self) -> str | None:
        for entry in reversed(self.logs):
            job_id = entry.get("job_id")
            if job_id:
                return str(job_id)
        return None


def update_from_payload(payload: Mapping[str, Any]) -> JobUpdate | InboxUpdate:
    if payload.get("kind") == "inbox" or "processing_logs" in payload:
        return InboxUpdate.from_payload(payload)
    return JobUpdate.from_payload(payload)


@dataclass(frozen=True)
class ProgressSnapshot:
    target: TrackingTarget
    record_id: str
    status: str = "queued"
    processed: int = 0
    total: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    message: str | None = None
    error_message: str | None = None
    outcome: ImportOutcome | None = None
    remediation: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def progress(self) -> float:
        if self.total <= 0:
            return 1.0 if self.is_terminal else 0.0
        return min(1.0, self.processed / self.total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.value,
            "record_id": self.record_id,
            "status": self.status,
            "processed": self.processed,
            "total": self.total,
            "success": self.success,
            "skipped": self.skipped,
            "errors": self.errors,
            "progress": self.progress,
            "message": self.message,
            "error_message": self.error_message,
            "outcome": self.outcome.value if self.outcome else None,
            "remediation": self.remediation,
            "updated_at": self.updated_at.isoformat(),
        }


def snapshot_from_job(update: JobUpdate) -> ProgressSnapshot:
    return ProgressSnapshot(
        target=TrackingTarget.JOB,
        record_id=update.job_id,
        status=update.status,
        processed=update.processed_rows,
        total=update.total_rows,
        success=update.new_records + update.matched,
        skipped=update.skipped,
        errors=update.failed,
        message=f"Processed {update.processed_rows}/{update.total_rows or '?'} rows",
        error_message=update.error_message,
    )


def _int(entry: Mapping[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = entry.get(key)
        if value is not None:
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
    return None


def snapshot_from_inbox(update: InboxUpdate) -> ProgressSnapshot:
    """Latest numbers found in the log list win; the last message is the label."""
    processed = total = success = skipped = errors = 0
    message = None
    error_message = None
    for entry in update.logs:
        processed = _int(entry, "processed", "processed_rows") or processed
        total = _int(entry, "total", "total_rows") or total
        success = _int(entry, "success", "imported") or success
        skipped = _int(entry, "skipped") or skipped
        errors = _int(entry, "errors", "failed") or errors
        message = entry.get("message") or message
        error_message = entry.get("error") or error_message

    return ProgressSnapshot(
        target=TrackingTarget.INBOX,
        record_id=update.record_id,
        status=INBOX_STATUS.get(update.status, "processing"),
        processed=processed,
        total=total,
        success=success,
        skipped=skipped,
        errors=errors,
        message=message,
        error_message=error_message,
    )


class ProgressReconciler:
    """Single consumer for every progress update of one import.

    Starts on an inbox record or directly on a job. The first update that
    names a job switches tracking to that job for good.
    """

    def __init__(
        self,
        record_id: str,
        target: TrackingTarget = TrackingTarget.INBOX,
        *,
        on_terminal: Callable[[ProgressSnapshot], None] | None = None,
        on_notify: Callable[[ProgressSnapshot], None] | None = None,
        skip_ratio_threshold: float | None = None,
    ):
        self.tracking_target = target
        self.record_id = record_id
        self.inbox_id = record_id if target is TrackingTarget.INBOX else None
        self.job_id = record_id if target is TrackingTarget.JOB else None
        self.push_received = False
        self.terminal_fired = False
        self._awaiting_job_counters = False
        self.snapshot = ProgressSnapshot(target=target, record_id=record_id)
        self._on_terminal = on_terminal
        self._on_notify = on_notify
        self._threshold = skip_ratio_threshold
        self._lock = threading.RLock()

    @property
    def tracked_id(self) -> str:
        return self.job_id if self.tracking_target is TrackingTarget.JOB else self.inbox_id

    def switch_to_job(self, job_id: str) -> bool:
        """One-way switch from inbox tracking to job tracking."""
        with self._lock:
            if self.tracking_target is TrackingTarget.JOB:
                return False
            logger.info(f"Inbox {self.inbox_id} handed over to job {job_id}; tracking the job from now on")
            self.tracking_target = TrackingTarget.JOB
            self.job_id = job_id
            # Inbox log totals may count raw rows; the first job read replaces them.
            self._awaiting_job_counters = True
            self.snapshot = replace(self.snapshot, target=TrackingTarget.JOB, record_id=job_id)
            return True

    def reconcile(self, update: JobUpdate | InboxUpdate, source: str = "poll") -> ProgressSnapshot:
        with self._lock:
            if source == "push":
                self.push_received = True
            if self.snapshot.is_terminal:
                return self.snapshot

            candidate = self._candidate(update)
            if candidate is None:
                return self.snapshot

            merged = self._merge(self.snapshot, candidate)
            changed = merged != self.snapshot
            self.snapshot = merged

            fire_terminal = merged.is_terminal and not self.terminal_fired
            if fire_terminal:
                self.terminal_fired = True
            notify = changed and not merged.is_terminal and (source == "push" or not self.push_received)

        # Callbacks run outside the lock so they may read the reconciler.
        if fire_terminal:
            logger.info(f"Import {merged.record_id} reached {merged.status} ({merged.outcome.value if merged.outcome else '-'})")
            if self._on_terminal:
                self._on_terminal(merged)
        elif notify and self._on_notify:
            self._on_notify(merged)
        return merged

    def _candidate(self, update: JobUpdate | InboxUpdate) -> ProgressSnapshot | None:
        if isinstance(update, InboxUpdate):
            if update.record_id != self.inbox_id:
                return None
            job_id = update.referenced_job_id()
            if job_id:
                self.switch_to_job(job_id)
            if self.tracking_target is TrackingTarget.JOB:
                # Inbox logs only matter until a job takes over.
                return None
            return snapshot_from_inbox(update)

        if self.tracking_target is TrackingTarget.INBOX:
            self.switch_to_job(update.job_id)
        if update.job_id != self.job_id:
            return None
        return snapshot_from_job(update)

    def _merge(self, current: ProgressSnapshot, incoming: ProgressSnapshot) -> ProgressSnapshot:
        first_job_read = self._awaiting_job_counters and incoming.target is TrackingTarget.JOB
        if first_job_read:
            self._awaiting_job_counters = False
        same_record = (
            not first_job_read
            and current.record_id == incoming.record_id
            and current.target is incoming.target
        )
        if same_record and STATUS_RANK.get(incoming.status, 0) < STATUS_RANK.get(current.status, 0):
            status = current.status
        else:
            status = incoming.status

        if same_record:
            merged = replace(
                incoming,
                status=status,
                processed=max(current.processed, incoming.processed),
                total=max(current.total, incoming.total),
                success=max(current.success, incoming.success),
                skipped=max(current.skipped, incoming.skipped),
                errors=max(current.errors, incoming.errors),
                updated_at=current.updated_at,
            )
        else:
            merged = replace(incoming, status=status, updated_at=current.updated_at)

        if merged.is_terminal:
            outcome = classify_outcome(merged.status, merged.processed, merged.success, merged.skipped, self._threshold)
            merged = replace(merged, outcome=outcome, remediation=remediation_message(outcome))
        if merged != current:
            merged = replace(merged, updated_at=datetime.now(timezone.utc))
        return merged


Fetcher = Callable[[TrackingTarget, str], JobUpdate | InboxUpdate | None]
Subscriber = Callable[[str, str, Callable[[dict[str, Any]], None]], Any]


class ProgressMonitor:
    """Runs the push listener and the poll timer for one reconciler.

    Polling keeps going even after pushes arrive and stops only once the
    tracked record is terminal or the monitor is closed. After a terminal
    snapshot ``on_close`` fires once the grace period has elapsed.
    """

    def __init__(
        self,
        reconciler: ProgressReconciler,
        fetch: Fetcher,
        subscribe: Subscriber | None = None,
        *,
        poll_interval: float | None = None,
        close_grace: float | None = None,
        on_close: Callable[[ProgressSnapshot], None] | None = None,
    ):
        settings = get_settings()
        self.reconciler = reconciler
        self._fetch = fetch
        self._subscribe = subscribe
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self.close_grace = close_grace if close_grace is not None else settings.close_grace_seconds
        self._on_close = on_close
        self._stop = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._grace_timer: threading.Timer | None = None
        self._subscription = None
        self._subscribed_to: tuple[str, str] | None = None
        self._lock = threading.Lock()
        self.closed = False

    @property
    def polling(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    def start(self) -> None:
        self._ensure_subscription()
        self._poll_thread = threading.Thread(target=self._poll_loop, name="progress-poll", daemon=True)
        self._poll_thread.start()

    def _ensure_subscription(self) -> None:
        if self._subscribe is None or self._stop.is_set():
            return
        wanted = (self.reconciler.tracking_target.value, self.reconciler.tracked_id)
        with self._lock:
            if self._subscribed_to == wanted:
                return
            self._drop_subscription()
            self._subscription = self._subscribe(wanted[0], wanted[1], self.handle_push)
            self._subscribed_to = wanted

    def _drop_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = None
        self._subscribed_to = None

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.poll_once()

    def poll_once(self) -> ProgressSnapshot:
        target = self.reconciler.tracking_target
        try:
            update = self._fetch(target, self.reconciler.tracked_id)
        except Exception as e:
            # A failed read is retried on the next tick.
            logger.warning(f"Polling {target.value} {self.reconciler.tracked_id} failed: {e}")
            return self.reconciler.snapshot
        if update is None:
            return self.reconciler.snapshot
        return self._consume(update, "poll")

    def handle_push(self, payload: Mapping[str, Any]) -> ProgressSnapshot:
        try:
            update = update_from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed push payload: {e}")
            return self.reconciler.snapshot
        return self._consume(update, "push")

    def _consume(self, update: JobUpdate | InboxUpdate, source: str) -> ProgressSnapshot:
        snapshot = self.reconciler.reconcile(update, source=source)
        if snapshot.is_terminal:
            self._finish(snapshot)
        else:
            self._ensure_subscription()
        return snapshot

    def _finish(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            if self._stop.is_set():
                return
            self._stop.set()
            self._drop_subscription()
            if self._on_close is not None:
                self._grace_timer = threading.Timer(self.close_grace, self._on_close, args=(snapshot,))
                self._grace_timer.daemon = True
                self._grace_timer.start()

    def close(self) -> None:
        """Stop polling and unsubscribe; a running import is not cancelled."""
        with self._lock:
            self._stop.set()
            self._drop_subscription()
            if self._grace_timer is not None:
                self._grace_timer.cancel()
            self.closed = True
        if self._poll_thread is not None and self._poll_thread is not threading.current_thread():
            self._poll_thread.join(timeout=self.poll_interval + 1)


class RecordStore:
    """Poll source reading job and inbox records with a fresh session each time."""

    def __init__(self, session_factory: Callable[[], Any]):
        self._session_factory = session_factory

    def read_job(self, job_id: str) -> JobUpdate:
        db = self._session_factory()
        try:
            return JobUpdate.from_payload(job_payload(get_job(db, job_id)))
        finally:
            db.close()

    def read_inbox(self, record_id: str) -> InboxUpdate:
        db = self._session_factory()
        try:
            return InboxUpdate.from_payload(inbox_payload(get_inbox_record(db, record_id)))
        finally:
            db.close()

    def fetch(self, target: TrackingTarget, record_id: str) -> JobUpdate | InboxUpdate | None:
        if target is TrackingTarget.JOB:
            return self.read_job(record_id)
        return self.read_inbox(record_id)


def monitor_import(
    session_factory: Callable[[], Any],
    record_id: str,
    target: TrackingTarget = TrackingTarget.JOB,
    *,
    subscribe: Subscriber | None = None,
    on_terminal: Callable[[ProgressSnapshot], None] | None = None,
    on_notify: Callable[[ProgressSnapshot], None] | None = None,
    on_close: Callable[[ProgressSnapshot], None] | None = None,
) -> ProgressMonitor:
    """Wire a reconciler to the database poller and the push channel, then start it."""
    reconciler = ProgressReconciler(record_id, target, on_terminal=on_terminal, on_notify=on_notify)
    monitor = ProgressMonitor(reconciler, RecordStore(session_factory).fetch, subscribe, on_close=on_close)
    monitor.start()
    return monitor
