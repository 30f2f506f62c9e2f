"""Deletion scheduler: one active record, warnings, cancellation, execution."""
from datetime import timedelta

import pytest

from gallery_backend.core.database import scheduled_deletions
from gallery_backend.core.errors import ValidationError
from gallery_backend.features.lifecycle import scheduler, state_machine
from gallery_backend.features.lifecycle.event_log import list_events


def test_schedule_creates_one_record_ninety_days_out(make_account, now):
    make_account()
    record, created = scheduler.schedule("acct_alice", now=now)

    assert created is True
    assert record.deletion_type == "user_storage"
    assert record.scheduled_for == now + timedelta(days=90)
    assert record.is_active


def test_schedule_twice_keeps_one_active_record(make_account, now):
    make_account()
    first, _ = scheduler.schedule("acct_alice", now=now)
    second, created = scheduler.schedule("acct_alice", now=now + timedelta(days=3))

    assert created is False
    assert second.deletion_id == first.deletion_id
    assert second.scheduled_for == first.scheduled_for


def test_cancel_clears_active_record(make_account, now):
    make_account()
    scheduler.schedule("acct_alice", now=now)

    assert scheduler.cancel("acct_alice", now=now) == 1
    assert scheduler.get_active_deletion("acct_alice") is None
    assert scheduler.cancel("acct_alice", now=now) == 0


def test_schedule_after_cancel_creates_new_record(make_account, now):
    make_account()
    first, _ = scheduler.schedule("acct_alice", now=now)
    scheduler.cancel("acct_alice", now=now)
    second, created = scheduler.schedule("acct_alice", now=now + timedelta(days=1))
    assert created is True
    assert second.deletion_id != first.deletion_id


def test_pending_warnings_window(make_account, now):
    make_account()
    record, _ = scheduler.schedule("acct_alice", now=now)

    assert scheduler.list_pending_warnings(7, now=now) == []
    due_soon = now + timedelta(days=84)
    pending = scheduler.list_pending_warnings(7, now=due_soon)
    assert [d.deletion_id for d in pending] == [record.deletion_id]


def test_negative_lead_days_rejected():
    with pytest.raises(ValidationError):
        scheduler.list_pending_warnings(-1)


def test_mark_warning_sent_once(make_account, now):
    make_account()
    record, _ = scheduler.schedule("acct_alice", now=now)
    later = now + timedelta(days=85)

    assert scheduler.mark_warning_sent(record.deletion_id, now=later) is True
    assert scheduler.mark_warning_sent(record.deletion_id, now=later) is False
    assert scheduler.list_pending_warnings(7, now=later) == []

    warned = [e for e in list_events("acct_alice") if e["event_type"] == "deletion_warning_sent"]
    assert len(warned) == 1
    assert warned[0]["correlation_id"] == f"deletion:{record.deletion_id}"


def test_mark_warning_sent_on_canceled_or_missing_record(make_account, now):
    make_account()
    record, _ = scheduler.schedule("acct_alice", now=now)
    scheduler.cancel("acct_alice", now=now)

    assert scheduler.mark_warning_sent(record.deletion_id, now=now) is False
    assert scheduler.mark_warning_sent(999999, now=now) is False


def test_expired_grace_periods_lists_only_elapsed_paid_accounts(make_account, now):
    make_account("acct_alice")
    make_account("acct_bob", email="bob@example.com")
    make_account("acct_carol", email="carol@example.com")
    state_machine.record_payment_failure("acct_alice", "evt_a", now=now)
    state_machine.record_payment_failure("acct_bob", "evt_b", now=now + timedelta(days=10))

    expired = scheduler.list_expired_grace_periods(now=now + timedelta(days=22))

    assert [a.account_id for a in expired] == ["acct_alice"]


def test_due_deletions_and_execution(make_account, now):
    make_account()
    record, _ = scheduler.schedule("acct_alice", now=now)

    assert scheduler.list_due_deletions(now=now + timedelta(days=89)) == []
    due = scheduler.list_due_deletions(now=now + timedelta(days=90))
    assert [d.deletion_id for d in due] == [record.deletion_id]

    assert scheduler.mark_executed(record.deletion_id, now=now + timedelta(days=90)) is True
    assert scheduler.mark_executed(record.deletion_id, now=now + timedelta(days=91)) is False
    # Executed rows are terminal: cancel no longer touches them
    assert scheduler.cancel("acct_alice", now=now + timedelta(days=92)) == 0


def test_deletion_record_columns():
    assert set(scheduled_deletions.c.keys()) == {
        "deletion_id",
        "account_id",
        "deletion_type",
        "scheduled_for",
        "warning_sent_at",
        "executed_at",
        "canceled_at",
        "created_at",
    }
