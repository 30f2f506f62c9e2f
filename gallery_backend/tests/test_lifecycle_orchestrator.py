"""
Lifecycle orchestrator: replay, partial cascades and resumption.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from gallery_backend.core.errors import NotFoundError, PartialCascadeFailureError, ValidationError
from gallery_backend.core.metrics import lifecycle_replays_total
from gallery_backend.features.lifecycle import orchestrator, scheduler, state_machine
from gallery_backend.features.lifecycle.archival import count_active, list_archived
from gallery_backend.features.lifecycle.event_log import list_events


def _types(account_id):
    return [e["event_type"] for e in reversed(list_events(account_id))]


def test_payment_failed_outcome(make_account, now):
    make_account(stripe_customer_id="cus_alice")
    outcome = orchestrator.on_payment_failed("cus_alice", "evt_1", now=now)

    assert outcome.action == "payment_failed"
    assert outcome.status == "grace_period"
    assert outcome.failure_count == 1
    assert outcome.grace_period_ends_at == (now + timedelta(days=21)).isoformat()
    assert outcome.already_processed is False


def test_payment_failed_replay_is_noop(make_account, now):
    make_account(stripe_customer_id="cus_alice")
    first = orchestrator.on_payment_failed("cus_alice", "evt_1", now=now)
    events_before = len(list_events("acct_alice"))

    replay = orchestrator.on_payment_failed("cus_alice", "evt_1", now=now + timedelta(hours=1))

    assert replay.already_processed is True
    assert replay.failure_count == first.failure_count
    assert replay.grace_period_ends_at == first.grace_period_ends_at
    assert state_machine.get_account("acct_alice").payment_failure_count == 1
    assert len(list_events("acct_alice")) == events_before
    assert lifecycle_replays_total.value({"action": "payment_failed"}) == 1


def test_unknown_customer_surfaces_not_found(now):
    with pytest.raises(NotFoundError):
        orchestrator.on_payment_failed("cus_ghost", "evt_1", now=now)


def test_out_of_order_recovery_is_ignored(make_account, now):
    make_account()
    outcome = orchestrator.on_payment_recovered("acct_alice", "evt_1", now=now)

    assert outcome.ignored is True
    assert outcome.status == "active"
    assert _types("acct_alice") == []


def test_cancellation_runs_full_downgrade_cascade(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 5)

    outcome = orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    assert outcome.status == "free"
    assert outcome.previous_plan == "pro"
    assert outcome.archived_count == 2
    assert outcome.deletion_scheduled is True
    assert _types("acct_alice") == [
        "subscription_canceled",
        "downgrade_initiated",
        "galleries_archived",
        "deletion_scheduled",
        "downgrade_completed",
    ]
    deletion = scheduler.get_active_deletion("acct_alice")
    assert deletion.scheduled_for == now + timedelta(days=90)


def test_cancellation_replay_returns_recorded_outcome(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 5)
    first = orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    replay = orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now + timedelta(days=1))

    assert replay.already_processed is True
    assert replay.archived_count == first.archived_count
    assert replay.previous_plan == "pro"
    assert count_active("acct_alice") == 3
    assert len(list_events("acct_alice")) == 5


def test_cancellation_with_keep_list(make_account, make_galleries, now):
    make_account()
    ids = make_galleries("acct_alice", 5)

    outcome = orchestrator.on_subscription_canceled(
        "acct_alice", "evt_cancel", keep_gallery_ids=[ids[4]], now=now
    )

    assert outcome.archived_count == 4
    assert list_archived("acct_alice") == ids[:4]


def test_second_cancellation_with_new_id_is_ignored(make_account, now):
    make_account()
    orchestrator.on_subscription_canceled("acct_alice", "evt_1", now=now)
    outcome = orchestrator.on_subscription_canceled("acct_alice", "evt_2", now=now)
    assert outcome.ignored is True


def test_partial_failure_then_redelivery_resumes(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 6)

    with patch.object(orchestrator.scheduler, "schedule", side_effect=RuntimeError("storage api down")):
        with pytest.raises(PartialCascadeFailureError) as excinfo:
            orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    assert excinfo.value.failed_steps == ["deletion_scheduled"]
    assert excinfo.value.outcome.archived_count == 3
    # Transition and archival stay committed
    assert state_machine.get_account("acct_alice").plan == "free"
    assert count_active("acct_alice") == 3
    assert "cascade_step_failed" in _types("acct_alice")
    assert "downgrade_completed" not in _types("acct_alice")

    outcome = orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    assert outcome.already_processed is False
    assert outcome.archived_count == 3
    assert outcome.deletion_scheduled is True
    types = _types("acct_alice")
    assert types.count("galleries_archived") == 1
    assert types.count("subscription_canceled") == 1
    assert types[-1] == "downgrade_completed"


def test_sweep_resumes_incomplete_cascade(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 4)
    with patch.object(orchestrator.archival, "archive_excess", side_effect=RuntimeError("db hiccup")):
        with pytest.raises(PartialCascadeFailureError):
            orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)
    assert count_active("acct_alice") == 4

    stats = orchestrator.run_grace_period_sweep(now=now + timedelta(hours=1))

    assert stats["resumed"] == 1
    assert stats["errors"] == []
    assert count_active("acct_alice") == 3
    assert "downgrade_completed" in _types("acct_alice")


def test_stale_downgrade_is_superseded_by_restore(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 4)
    with patch.object(orchestrator.archival, "archive_excess", side_effect=RuntimeError("db hiccup")):
        with pytest.raises(PartialCascadeFailureError):
            orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    orchestrator.on_subscription_resumed("acct_alice", "evt_resume", "pro", now=now + timedelta(minutes=5))
    stats = orchestrator.run_grace_period_sweep(now=now + timedelta(hours=1))

    assert stats["resumed"] == 1
    assert count_active("acct_alice") == 4
    replay = orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now + timedelta(hours=2))
    assert replay.already_processed is True
    assert replay.ignored is True


def test_restore_cascade(make_account, make_galleries, now):
    make_account()
    make_galleries("acct_alice", 5)
    orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)

    outcome = orchestrator.on_subscription_resumed("acct_alice", "evt_resume", "basic", now=now + timedelta(days=2))

    assert outcome.status == "active"
    assert outcome.new_plan == "basic"
    assert outcome.restored_count == 2
    assert outcome.deletions_canceled == 1
    assert _types("acct_alice")[-4:] == [
        "subscription_resumed",
        "deletion_canceled",
        "galleries_restored",
        "restore_completed",
    ]

    replay = orchestrator.on_subscription_resumed("acct_alice", "evt_resume", "basic", now=now + timedelta(days=3))
    assert replay.already_processed is True
    assert replay.restored_count == 2


def test_plan_change_skips_restore_cascade(make_account, now):
    make_account(plan="basic")
    outcome = orchestrator.on_subscription_resumed("acct_alice", "evt_1", "pro", now=now)

    assert outcome.new_plan == "pro"
    assert outcome.reason == "plan_change"
    assert _types("acct_alice") == ["subscription_updated"]

    replay = orchestrator.on_subscription_resumed("acct_alice", "evt_1", "pro", now=now)
    assert replay.already_processed is True


def test_resume_with_unknown_plan_rejected(make_account, now):
    make_account()
    with pytest.raises(ValidationError):
        orchestrator.on_subscription_resumed("acct_alice", "evt_1", "platinum", now=now)


def test_directory_push_after_transition(make_account, now):
    make_account()
    with patch.object(orchestrator.directory, "push_account_state") as push:
        orchestrator.on_payment_failed("acct_alice", "evt_1", now=now)
    push.assert_called_once()
    assert push.call_args[0][0].subscription_status == "grace_period"


def test_directory_failure_does_not_fail_transition(make_account, now):
    make_account()
    with patch.object(orchestrator.directory, "push_account_state", side_effect=RuntimeError("clerk down")):
        outcome = orchestrator.on_payment_failed("acct_alice", "evt_1", now=now)
    assert outcome.status == "grace_period"


def test_grace_sweep_records_job_run(make_account, now):
    make_account()
    orchestrator.on_payment_failed("acct_alice", "evt_1", now=now)

    stats = orchestrator.run_grace_period_sweep(now=now + timedelta(days=22))
    again = orchestrator.run_grace_period_sweep(now=now + timedelta(days=22, hours=1))

    assert stats["downgraded"] == 1
    assert stats["status"] == "success"
    assert again["processed"] == 0
    runs = orchestrator.jobs.list_job_runs(orchestrator.GRACE_SWEEP_JOB)
    assert len(runs) == 2
    assert runs[-1]["stats"]["downgraded"] == 1


def test_grace_sweep_isolates_account_failures(make_account, now):
    make_account("acct_alice")
    make_account("acct_bob", email="bob@example.com")
    orchestrator.on_payment_failed("acct_alice", "evt_a", now=now)
    orchestrator.on_payment_failed("acct_bob", "evt_b", now=now)

    real_downgrade = state_machine.downgrade

    def _flaky(account_id, *args, **kwargs):
        if account_id == "acct_alice":
            raise RuntimeError("lock timeout")
        return real_downgrade(account_id, *args, **kwargs)

    with patch.object(orchestrator.state_machine, "downgrade", side_effect=_flaky):
        stats = orchestrator.run_grace_period_sweep(now=now + timedelta(days=22))

    assert stats["processed"] == 2
    assert stats["downgraded"] == 1
    assert len(stats["errors"]) == 1
    assert stats["status"] == "partial"
    assert state_machine.get_account("acct_bob").plan == "free"


def test_deletion_warning_scan_marks_only_delivered(make_account, now):
    make_account()
    orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)
    scan_at = now + timedelta(days=85)

    with patch.object(orchestrator.email, "send_deletion_warning", return_value=False):
        failed = orchestrator.run_deletion_warning_scan(7, now=scan_at)
    assert failed["failed"] == 1
    assert len(orchestrator.list_pending_deletion_warnings(7, now=scan_at)) == 1

    with patch.object(orchestrator.email, "send_deletion_warning", return_value=True) as send:
        sent = orchestrator.run_deletion_warning_scan(7, now=scan_at)
    assert sent["sent"] == 1
    send.assert_called_once()
    assert orchestrator.list_pending_deletion_warnings(7, now=scan_at) == []
