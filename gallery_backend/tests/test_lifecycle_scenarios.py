"""
End-to-end lifecycle scenarios and invariants over random event sequences.
"""
import random
from datetime import timedelta

import pytest
from sqlalchemy import select

from gallery_backend.core.config import settings
from gallery_backend.core.database import get_db_session, accounts, galleries, scheduled_deletions
from gallery_backend.features.lifecycle import orchestrator, scheduler, state_machine
from gallery_backend.features.lifecycle.archival import count_active, list_archived
from gallery_backend.features.lifecycle.event_log import list_events


def test_recovery_before_grace_expiry(make_account, make_galleries, now):
    """7 galleries, 3 failures, recovery on day 20."""
    make_account(stripe_customer_id="cus_alice")
    make_galleries("acct_alice", 7)

    first = orchestrator.on_payment_failed("cus_alice", "in_1", now=now)
    orchestrator.on_payment_failed("cus_alice", "in_2", now=now + timedelta(days=7))
    third = orchestrator.on_payment_failed("cus_alice", "in_3", now=now + timedelta(days=14))

    assert third.grace_period_ends_at == first.grace_period_ends_at
    assert third.failure_count == 3
    started = [e for e in list_events("acct_alice") if e["event_type"] == "grace_period_started"]
    assert len(started) == 1

    # Sweep before the deadline leaves the account alone
    stats = orchestrator.run_grace_period_sweep(now=now + timedelta(days=19))
    assert stats["processed"] == 0

    outcome = orchestrator.on_payment_recovered("cus_alice", "in_4", now=now + timedelta(days=20))

    account = state_machine.get_account("acct_alice")
    assert outcome.status == "active"
    assert account.payment_failure_count == 0
    assert account.grace_period_ends_at is None
    assert count_active("acct_alice") == 7


def test_grace_expiry_downgrade(make_account, make_galleries, now, monkeypatch):
    """5-gallery free limit, 12 galleries, grace expiry."""
    monkeypatch.setattr(settings, "FREE_PLAN_GALLERY_LIMIT", 5)
    make_account()
    ids = make_galleries("acct_alice", 12)
    orchestrator.on_payment_failed("acct_alice", "in_1", now=now)
    sweep_at = now + timedelta(days=21, hours=1)

    stats = orchestrator.run_grace_period_sweep(now=sweep_at)

    assert stats["downgraded"] == 1
    assert stats["galleries_archived"] == 7
    assert list_archived("acct_alice") == ids[5:]
    assert count_active("acct_alice") == 5
    with get_db_session() as session:
        reasons = {r.archived_reason for r in session.execute(
            select(galleries.c.archived_reason).where(galleries.c.archived_at.is_not(None))
        ).fetchall()}
        deletions = session.execute(select(scheduled_deletions)).fetchall()
    assert reasons == {"payment_failed"}
    assert len(deletions) == 1
    assert scheduler.get_active_deletion("acct_alice").scheduled_for == sweep_at + timedelta(days=90)

    account = state_machine.get_account("acct_alice")
    assert account.plan == "free"
    assert account.previous_plan == "pro"
    correlation = orchestrator.sweep_correlation_id("acct_alice", sweep_at)
    assert any(e["correlation_id"] == correlation and e["event_type"] == "downgrade_completed"
               for e in list_events("acct_alice"))


def test_resubscribe_mid_deletion_window(make_account, make_galleries, now):
    """Resubscribe 40 days into the deletion window."""
    make_account()
    make_galleries("acct_alice", 8)
    orchestrator.on_payment_failed("acct_alice", "in_1", now=now)
    downgraded_at = now + timedelta(days=22)
    orchestrator.run_grace_period_sweep(now=downgraded_at)
    assert count_active("acct_alice") == 3

    outcome = orchestrator.on_subscription_resumed(
        "acct_alice", "cs_1", "pro", now=downgraded_at + timedelta(days=40)
    )

    assert outcome.deletions_canceled == 1
    assert outcome.restored_count == 5
    assert count_active("acct_alice") == 8
    assert scheduler.get_active_deletion("acct_alice") is None
    account = state_machine.get_account("acct_alice")
    assert account.previous_plan is None
    assert account.downgraded_at is None
    assert account.plan == "pro"


@pytest.mark.parametrize("gallery_count", [0, 2, 9])
def test_downgrade_then_restore_round_trip(make_account, make_galleries, now, gallery_count):
    make_account()
    make_galleries("acct_alice", gallery_count)

    orchestrator.on_subscription_canceled("acct_alice", "evt_cancel", now=now)
    orchestrator.on_subscription_resumed("acct_alice", "evt_resume", "pro", now=now + timedelta(minutes=1))

    assert count_active("acct_alice") == gallery_count
    with get_db_session() as session:
        rows = session.execute(select(scheduled_deletions)).fetchall()
    assert len(rows) == 1
    assert rows[0].canceled_at is not None


def _snapshot(account_id):
    with get_db_session() as session:
        account = session.execute(select(accounts).where(accounts.c.account_id == account_id)).fetchone()
        archived = session.execute(
            select(galleries.c.gallery_id).where(galleries.c.archived_at.is_not(None))
        ).fetchall()
    return (
        account.plan,
        account.subscription_status,
        account.payment_failure_count,
        account.grace_period_ends_at,
        len(archived),
        len(list_events(account_id, limit=1000)),
    )


def _check_invariants(account_id):
    account = state_machine.get_account(account_id)
    if account.subscription_status == "grace_period":
        assert account.grace_period_ends_at is not None
    else:
        assert account.grace_period_ends_at is None
    assert (account.previous_plan is not None) == account.is_downgraded
    with get_db_session() as session:
        for row in session.execute(select(galleries)).fetchall():
            assert (row.archived_at is None) == (row.archived_reason is None)
        active = session.execute(
            select(scheduled_deletions)
            .where(scheduled_deletions.c.executed_at.is_(None))
            .where(scheduled_deletions.c.canceled_at.is_(None))
        ).fetchall()
    assert len(active) <= 1


@pytest.mark.parametrize("seed", [1, 7, 42, 2026])
def test_random_event_sequences_hold_invariants(make_account, make_galleries, now, seed):
    rng = random.Random(seed)
    make_account(plan="basic")
    make_galleries("acct_alice", 6)
    clock = now
    history = []

    for step in range(40):
        clock += timedelta(days=rng.choice([0, 1, 3, 10, 25]))
        kind = rng.choice(["failed", "recovered", "canceled", "resumed", "sweep", "replay"])
        cid = f"evt_{seed}_{step}"

        if kind == "replay" and history:
            kind, cid, plan = rng.choice(history)
            before = _snapshot("acct_alice")
            outcome = _dispatch(kind, cid, plan, clock)
            assert outcome.already_processed
            assert _snapshot("acct_alice") == before
            continue
        if kind == "replay":
            continue

        plan = rng.choice(["basic", "pro", "studio"])
        outcome = _dispatch(kind, cid, plan, clock)
        # Ignored events left no trace, so only applied ones are replayable
        if outcome is not None and not outcome.ignored:
            history.append((kind, cid, plan))
        _check_invariants("acct_alice")


def _dispatch(kind, cid, plan, clock):
    if kind == "failed":
        return orchestrator.on_payment_failed("acct_alice", cid, now=clock)
    if kind == "recovered":
        return orchestrator.on_payment_recovered("acct_alice", cid, now=clock)
    if kind == "canceled":
        return orchestrator.on_subscription_canceled("acct_alice", cid, now=clock)
    if kind == "resumed":
        return orchestrator.on_subscription_resumed("acct_alice", cid, plan, now=clock)
    orchestrator.run_grace_period_sweep(now=clock)
    return None
