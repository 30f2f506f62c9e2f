"""
Deletion scheduler.

Schedules, warns before and cancels permanent removal of a downgraded
account's stored content. Execution itself belongs to an external sweep;
this module only feeds it (list_due_deletions) and records the outcome
(mark_executed).

The read-only queries here (pending warnings, expired grace periods, due
deletions) never mutate, so "detect" and "act" stay separately retryable
and safe to run from several instances at once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, update, insert, and_
from sqlalchemy.orm import Session

from gallery_backend.core.config import settings
from gallery_backend.core.database import (
    get_db_session,
    session_scope,
    accounts,
    scheduled_deletions,
)
from gallery_backend.core.errors import ValidationError
from gallery_backend.features.lifecycle import event_log
from gallery_backend.features.plans.service import paid_plan_ids
from gallery_backend.models.lifecycle import (
    AccountSnapshot,
    DeletionType,
    LifecycleEventType,
    ScheduledDeletion,
    SubscriptionStatus,
    utc_now,
)


logger = logging.getLogger("gallery.lifecycle.scheduler")


def _active(deletion_type: Optional[str] = None):
    clause = and_(
        scheduled_deletions.c.executed_at.is_(None),
        scheduled_deletions.c.canceled_at.is_(None),
    )
    if deletion_type:
        clause = and_(clause, scheduled_deletions.c.deletion_type == deletion_type)
    return clause


def get_active_deletion(
    account_id: str,
    deletion_type: str = DeletionType.USER_STORAGE.value,
    *,
    session: Optional[Session] = None,
) -> Optional[ScheduledDeletion]:
    with session_scope(session) as s:
        row = s.execute(
            select(scheduled_deletions)
            .where(scheduled_deletions.c.account_id == account_id)
            .where(_active(deletion_type))
            .order_by(scheduled_deletions.c.deletion_id.asc())
            .limit(1)
        ).fetchone()
    return ScheduledDeletion.from_row(row) if row else None


def schedule(
    account_id: str,
    *,
    now: Optional[datetime] = None,
    horizon_days: Optional[int] = None,
    session: Optional[Session] = None,
) -> Tuple[ScheduledDeletion, bool]:
    """Ensure one active user_storage deletion exists. Returns (record, created).

    A concurrent duplicate insert trips uq_scheduled_deletions_active and
    raises IntegrityError; the orchestrator retries the step, which then finds
    the winner's record.
    """
    ts = now or utc_now()
    days = horizon_days if horizon_days is not None else settings.DELETION_HORIZON_DAYS

    with session_scope(session) as s:
        existing = get_active_deletion(account_id, session=s)
        if existing is not None:
            return existing, False

        s.execute(
            insert(scheduled_deletions).values(
                account_id=account_id,
                deletion_type=DeletionType.USER_STORAGE.value,
                scheduled_for=ts + timedelta(days=days),
                created_at=ts,
            )
        )
        created = get_active_deletion(account_id, session=s)

    logger.info(
        "[deletion] scheduled user storage deletion",
        extra={"account_id": account_id, "scheduled_for": created.scheduled_for.isoformat()},
    )
    return created, True


def cancel(
    account_id: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> int:
    """Cancel every active user_storage deletion for the account. Returns the count."""
    ts = now or utc_now()
    with session_scope(session) as s:
        canceled = s.execute(
            update(scheduled_deletions)
            .where(scheduled_deletions.c.account_id == account_id)
            .where(_active(DeletionType.USER_STORAGE.value))
            .values(canceled_at=ts)
        ).rowcount or 0

    if canceled:
        logger.info("[deletion] canceled scheduled deletion", extra={"account_id": account_id, "canceled": canceled})
    return canceled


def list_pending_warnings(lead_days: Optional[int] = None, *, now: Optional[datetime] = None) -> List[ScheduledDeletion]:
    """Active, not-yet-warned deletions due within lead_days. Read-only."""
    days = lead_days if lead_days is not None else settings.DELETION_WARNING_LEAD_DAYS
    if days < 0:
        raise ValidationError(f"lead_days must be >= 0, got {days}")
    horizon = (now or utc_now()) + timedelta(days=days)

    with get_db_session() as session:
        rows = session.execute(
            select(scheduled_deletions)
            .where(_active())
            .where(scheduled_deletions.c.warning_sent_at.is_(None))
            .where(scheduled_deletions.c.scheduled_for <= horizon)
            .order_by(scheduled_deletions.c.scheduled_for.asc(), scheduled_deletions.c.deletion_id.asc())
        ).fetchall()
    return [ScheduledDeletion.from_row(row) for row in rows]


def mark_warning_sent(deletion_id: int, *, now: Optional[datetime] = None) -> bool:
    """Record a delivered warning. False when the record is terminal or already warned."""
    ts = now or utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(scheduled_deletions).where(scheduled_deletions.c.deletion_id == deletion_id)
        ).fetchone()
        if row is None:
            return False

        marked = session.execute(
            update(scheduled_deletions)
            .where(scheduled_deletions.c.deletion_id == deletion_id)
            .where(_active())
            .where(scheduled_deletions.c.warning_sent_at.is_(None))
            .values(warning_sent_at=ts)
        ).rowcount
        if not marked:
            return False

        event_log.record_event(
            session,
            account_id=row.account_id,
            event_type=LifecycleEventType.DELETION_WARNING_SENT,
            correlation_id=f"deletion:{deletion_id}",
            metadata={"deletion_id": deletion_id, "scheduled_for": ScheduledDeletion.from_row(row).scheduled_for.isoformat()},
            now=ts,
        )
    return True


def list_expired_grace_periods(*, now: Optional[datetime] = None, limit: int = 500) -> List[AccountSnapshot]:
    """Accounts past their grace deadline and still on a paid plan. Read-only."""
    ts = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(accounts)
            .where(accounts.c.subscription_status == SubscriptionStatus.GRACE_PERIOD.value)
            .where(accounts.c.grace_period_ends_at.is_not(None))
            .where(accounts.c.grace_period_ends_at <= ts)
            .where(accounts.c.plan.in_(paid_plan_ids()))
            .order_by(accounts.c.grace_period_ends_at.asc())
            .limit(limit)
        ).fetchall()
    return [AccountSnapshot.from_row(row) for row in rows]


def list_due_deletions(*, now: Optional[datetime] = None, limit: int = 100) -> List[ScheduledDeletion]:
    """Active deletions whose date has passed; the external executor's feed."""
    ts = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(scheduled_deletions)
            .where(_active())
            .where(scheduled_deletions.c.scheduled_for <= ts)
            .order_by(scheduled_deletions.c.scheduled_for.asc())
            .limit(limit)
        ).fetchall()
    return [ScheduledDeletion.from_row(row) for row in rows]


def mark_executed(deletion_id: int, *, now: Optional[datetime] = None) -> bool:
    """Record that the external executor removed the content. Terminal."""
    ts = now or utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(scheduled_deletions).where(scheduled_deletions.c.deletion_id == deletion_id)
        ).fetchone()
        if row is None:
            return False

        executed = session.execute(
            update(scheduled_deletions)
            .where(scheduled_deletions.c.deletion_id == deletion_id)
            .where(_active())
            .values(executed_at=ts)
        ).rowcount
        if not executed:
            return False

        event_log.record_event(
            session,
            account_id=row.account_id,
            event_type=LifecycleEventType.DELETION_EXECUTED,
            correlation_id=f"deletion:{deletion_id}",
            metadata={"deletion_id": deletion_id, "deletion_type": row.deletion_type},
            now=ts,
        )
    return True
