"""
Unit tests for progress reconciliation across push and poll producers.
"""

import threading
from unittest.mock import MagicMock

import pytest

from supplier_import.services.outcomes import ImportOutcome
from supplier_import.services.progress_reconciler import (
    InboxUpdate,
    JobUpdate,
    ProgressMonitor,
    ProgressReconciler,
    TrackingTarget,
    update_from_payload,
)


def job_update(status="processing", processed=0, total=300, new=0, matched=0, skipped=0, failed=0, job_id="job-1"):
    return JobUpdate(
        job_id=job_id,
        status=status,
        total_rows=total,
        processed_rows=processed,
        new_records=new,
        matched=matched,
        skipped=skipped,
        failed=failed,
    )


# ===================
# RECONCILER
# ===================

class TestReconciler:

    def test_terminal_side_effect_fires_once(self):
        on_terminal = MagicMock()
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB, on_terminal=on_terminal)
        done = job_update("completed", processed=300, new=300)

        first = reconciler.reconcile(done, source="push")
        second = reconciler.reconcile(done, source="poll")

        assert on_terminal.call_count == 1
        assert first == second
        assert first.outcome is ImportOutcome.SUCCESS

    def test_concurrent_producers_fire_once(self):
        on_terminal = MagicMock()
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB, on_terminal=on_terminal)
        done = job_update("completed", processed=300, new=300)
        threads = [
            threading.Thread(target=reconciler.reconcile, args=(done, source))
            for source in ["push", "poll"] * 10
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert on_terminal.call_count == 1

    def test_terminal_snapshot_is_frozen(self):
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB)
        reconciler.reconcile(job_update("failed", processed=100))
        after = reconciler.reconcile(job_update("processing", processed=200))
        assert after.status == "failed"
        assert after.processed == 100

    def test_counters_never_go_backwards(self):
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB)
        reconciler.reconcile(job_update(processed=200, new=150, skipped=10))
        stale = reconciler.reconcile(job_update(status="queued", processed=100, new=90))
        assert stale.processed == 200
        assert stale.success == 150
        assert stale.skipped == 10
        assert stale.status == "processing"

    def test_degenerate_outcomes(self):
        mapping = ProgressReconciler("job-1", TrackingTarget.JOB).reconcile(
            job_update("completed", processed=300, skipped=290)
        )
        data = ProgressReconciler("job-1", TrackingTarget.JOB).reconcile(
            job_update("completed", processed=300, skipped=100)
        )
        assert mapping.outcome is ImportOutcome.NO_PRODUCTS_INVALID_MAPPING
        assert data.outcome is ImportOutcome.NO_PRODUCTS_OTHER
        assert mapping.remediation != data.remediation

    def test_updates_for_other_jobs_are_ignored(self):
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB)
        snapshot = reconciler.reconcile(job_update("completed", processed=5, job_id="job-2"))
        assert snapshot.status == "queued"

    def test_poll_notifications_suppressed_after_push(self):
        on_notify = MagicMock()
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB, on_notify=on_notify)

        reconciler.reconcile(job_update(processed=10), source="poll")
        reconciler.reconcile(job_update(processed=20), source="push")
        reconciler.reconcile(job_update(processed=30), source="poll")

        assert on_notify.call_count == 2
        assert reconciler.snapshot.processed == 30


class TestInboxToJobSwitch:

    def test_inbox_logs_then_job(self):
        reconciler = ProgressReconciler("inbox-1", TrackingTarget.INBOX)
        logs = ({"message": "Lecture du fichier", "processed": 0, "total": 50},)
        snapshot = reconciler.reconcile(InboxUpdate("inbox-1", "processing", logs))
        assert snapshot.target is TrackingTarget.INBOX
        assert snapshot.total == 50
        assert snapshot.message == "Lecture du fichier"

        handed_over = logs + ({"message": "Import lancé", "job_id": "job-9"},)
        reconciler.reconcile(InboxUpdate("inbox-1", "processing", handed_over))
        assert reconciler.tracking_target is TrackingTarget.JOB
        assert reconciler.tracked_id == "job-9"

        # A later inbox update cannot take tracking back.
        reconciler.reconcile(InboxUpdate("inbox-1", "completed", logs))
        assert reconciler.tracking_target is TrackingTarget.JOB
        assert not reconciler.snapshot.is_terminal

        final = reconciler.reconcile(job_update("completed", processed=50, new=50, total=50, job_id="job-9"))
        assert final.target is TrackingTarget.JOB
        assert final.record_id == "job-9"
        assert final.outcome is ImportOutcome.SUCCESS

    def test_job_counters_replace_inbox_counters(self):
        reconciler = ProgressReconciler("inbox-1", TrackingTarget.INBOX)
        logs = ({"message": "Lecture du fichier", "processed": 120, "total": 500},)
        reconciler.reconcile(InboxUpdate("inbox-1", "processing", logs))
        assert reconciler.snapshot.total == 500

        handed_over = logs + ({"message": "Import lancé", "job_id": "job-9"},)
        reconciler.reconcile(InboxUpdate("inbox-1", "processing", handed_over))
        assert reconciler.tracking_target is TrackingTarget.JOB

        final = reconciler.reconcile(job_update("completed", processed=300, new=300, total=300, job_id="job-9"))
        assert final.total == 300
        assert final.processed == 300
        assert final.progress == 1.0
        assert final.outcome is ImportOutcome.SUCCESS

        # Later job reads merge as usual.
        stale = reconciler.reconcile(job_update("processing", processed=100, total=300, job_id="job-9"))
        assert stale.status == "completed"
        assert stale.processed == 300

    def test_job_update_switches_directly(self):
        reconciler = ProgressReconciler("inbox-1", TrackingTarget.INBOX)
        reconciler.reconcile(job_update(processed=1, job_id="job-3"), source="push")
        assert reconciler.tracking_target is TrackingTarget.JOB
        assert reconciler.job_id == "job-3"

    def test_pending_inbox_maps_to_queued(self):
        reconciler = ProgressReconciler("inbox-1", TrackingTarget.INBOX)
        snapshot = reconciler.reconcile(InboxUpdate("inbox-1", "pending"))
        assert snapshot.status == "queued"

    def test_payload_dispatch(self):
        assert isinstance(update_from_payload({"kind": "inbox", "id": "i", "processing_logs": []}), InboxUpdate)
        assert isinstance(update_from_payload({"kind": "job", "id": "j", "status": "processing"}), JobUpdate)


# ===================
# MONITOR
# ===================

class FakeSubscription:
    def __init__(self, kind, record_id):
        self.kind = kind
        self.record_id = record_id
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def subscriptions():
    created = []

    def subscribe(kind, record_id, callback):
        subscription = FakeSubscription(kind, record_id)
        created.append(subscription)
        return subscription

    subscribe.created = created
    return subscribe


class TestProgressMonitor:

    def test_terminal_stops_everything_and_closes_after_grace(self, subscriptions):
        closed = threading.Event()
        updates = iter([
            job_update(processed=100),
            job_update(processed=200),
            job_update("completed", processed=300, skipped=290),
        ])
        on_terminal = MagicMock()
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB, on_terminal=on_terminal)
        monitor = ProgressMonitor(
            reconciler,
            lambda target, record_id: next(updates),
            subscriptions,
            poll_interval=0.01,
            close_grace=0.01,
            on_close=lambda snapshot: closed.set(),
        )

        monitor.start()
        assert closed.wait(timeout=5)
        monitor.close()

        assert on_terminal.call_count == 1
        assert reconciler.snapshot.outcome is ImportOutcome.NO_PRODUCTS_INVALID_MAPPING
        assert subscriptions.created[0].closed
        assert not monitor.polling

    def test_push_and_poll_feed_the_same_reconciler(self, subscriptions):
        on_terminal = MagicMock()
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB, on_terminal=on_terminal)
        monitor = ProgressMonitor(
            reconciler,
            lambda target, record_id: job_update("completed", processed=300, new=300),
            subscriptions,
            poll_interval=60,
            close_grace=0,
        )
        monitor.start()

        monitor.handle_push({"kind": "job", "id": "job-1", "status": "completed", "processed_rows": 300, "total_rows": 300, "new_records": 300})
        monitor.poll_once()
        monitor.close()

        assert on_terminal.call_count == 1

    def test_resubscribes_after_switch_to_job(self, subscriptions):
        reconciler = ProgressReconciler("inbox-1", TrackingTarget.INBOX)
        monitor = ProgressMonitor(reconciler, lambda target, record_id: None, subscriptions, poll_interval=60)
        monitor.start()

        monitor.handle_push({"kind": "inbox", "id": "inbox-1", "status": "processing", "processing_logs": [{"job_id": "job-7"}]})
        monitor.close()

        assert [(s.kind, s.record_id) for s in subscriptions.created] == [("inbox", "inbox-1"), ("job", "job-7")]
        assert subscriptions.created[0].closed
        assert subscriptions.created[1].closed

    def test_close_does_not_touch_the_import(self, subscriptions):
        fetch = MagicMock(return_value=job_update(processed=10))
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB)
        monitor = ProgressMonitor(reconciler, fetch, subscriptions, poll_interval=60)
        monitor.start()
        monitor.close()

        assert monitor.closed
        assert reconciler.snapshot.status == "queued"
        assert not reconciler.snapshot.is_terminal

    def test_failed_poll_is_retried_later(self):
        fetch = MagicMock(side_effect=[RuntimeError("db down"), job_update(processed=5)])
        reconciler = ProgressReconciler("job-1", TrackingTarget.JOB)
        monitor = ProgressMonitor(reconciler, fetch, None, poll_interval=60)

        monitor.poll_once()
        snapshot = monitor.poll_once()
        assert snapshot.processed == 5
