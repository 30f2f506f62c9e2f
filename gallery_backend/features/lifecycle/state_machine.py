"""
Entitlement state machine.

Owns accounts.subscription_status and the grace-period window. Every
transition is a single guarded UPDATE (WHERE status IN expected) committed
together with its lifecycle events, so the datastore decides which of two
concurrent deliveries wins and the loser either sees rowcount == 0 or trips
the idempotency key on the event insert.

Transitions:
- active|past_due -> grace_period   first payment failure (deadline set once)
- grace_period -> grace_period      later failures (counter only)
- grace_period|past_due -> active   payment recovered
- paying -> free                    cancellation or grace-period expiry
- free|canceled -> active(plan)     resubscription
- active(plan A) -> active(plan B)  plan change on an account never downgraded
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_

from gallery_backend.core.config import settings
from gallery_backend.core.database import get_db_session, accounts
from gallery_backend.core.errors import NotFoundError, PolicyViolationError, ValidationError
from gallery_backend.features.lifecycle import event_log
from gallery_backend.features.plans.service import FREE_PLAN_ID, get_plan, is_paid
from gallery_backend.models.lifecycle import (
    AccountSnapshot,
    LifecycleEventType,
    SubscriptionStatus,
    PAYING_STATUSES,
    DOWNGRADED_STATUSES,
    utc_now,
)


logger = logging.getLogger("gallery.lifecycle.state")


@dataclass
class TransitionResult:
    account: AccountSnapshot
    previous_plan: Optional[str]
    kind: str
    events: List[str] = field(default_factory=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load(session, account_id: str) -> AccountSnapshot:
    row = session.execute(
        select(accounts).where(accounts.c.account_id == account_id)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Account not found: {account_id}")
    return AccountSnapshot.from_row(row)


def get_account(account_id: str) -> AccountSnapshot:
    with get_db_session() as session:
        return _load(session, account_id)


def resolve_account(customer_ref: str) -> AccountSnapshot:
    """Resolve by billing-provider customer reference, falling back to account id."""
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(
                or_(
                    accounts.c.stripe_customer_id == customer_ref,
                    accounts.c.account_id == customer_ref,
                )
            ).order_by(accounts.c.stripe_customer_id.is_(None))
        ).fetchone()
    if row is None:
        raise NotFoundError(f"No account for customer reference: {customer_ref}")
    return AccountSnapshot.from_row(row)


def link_customer(session, account_id: str, stripe_customer_id: str, *, now: Optional[datetime] = None) -> bool:
    """Point the account at a billing-provider customer id. Returns True when it changed.

    Checkout names the account explicitly, so a new customer id replaces an
    older one. An id already owned by another account is left alone.
    """
    owner = session.execute(
        select(accounts.c.account_id).where(accounts.c.stripe_customer_id == stripe_customer_id)
    ).fetchone()
    if owner is not None and owner.account_id != account_id:
        logger.warning(
            "[state] stripe customer already linked to another account",
            extra={"account_id": account_id, "error_code": "customer_conflict"},
        )
        return False

    linked = session.execute(
        update(accounts)
        .where(accounts.c.account_id == account_id)
        .where(or_(
            accounts.c.stripe_customer_id.is_(None),
            accounts.c.stripe_customer_id != stripe_customer_id,
        ))
        .values(stripe_customer_id=stripe_customer_id, updated_at=now or utc_now())
    ).rowcount
    if linked:
        logger.info("[state] linked stripe customer", extra={"account_id": account_id})
    return bool(linked)


def record_payment_failure(account_id: str, correlation_id: str, *, now: Optional[datetime] = None) -> TransitionResult:
    """Count a failed payment, opening a grace period on the first one."""
    ts = now or utc_now()
    deadline = ts + timedelta(days=settings.GRACE_PERIOD_DAYS)

    with get_db_session() as session:
        before = _load(session, account_id)
        if before.subscription_status in DOWNGRADED_STATUSES:
            raise PolicyViolationError(
                f"Payment failure for account without paid entitlements (status={before.subscription_status})"
            )

        # Deadline is set once per episode: only when currently null
        started = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.subscription_status.in_([
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.PAST_DUE.value,
            ]))
            .where(accounts.c.grace_period_ends_at.is_(None))
            .values(
                subscription_status=SubscriptionStatus.GRACE_PERIOD.value,
                grace_period_ends_at=deadline,
                payment_failure_count=accounts.c.payment_failure_count + 1,
                payment_failed_at=ts,
                updated_at=ts,
            )
        ).rowcount == 1

        if not started:
            counted = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .where(accounts.c.subscription_status == SubscriptionStatus.GRACE_PERIOD.value)
                .values(
                    payment_failure_count=accounts.c.payment_failure_count + 1,
                    payment_failed_at=ts,
                    updated_at=ts,
                )
            ).rowcount
            if counted == 0:
                raise PolicyViolationError(
                    f"Payment failure not applicable from status {before.subscription_status}"
                )

        after = _load(session, account_id)
        events = [LifecycleEventType.PAYMENT_FAILED.value]
        event_log.record_event(
            session,
            account_id=account_id,
            event_type=LifecycleEventType.PAYMENT_FAILED,
            correlation_id=correlation_id,
            previous_plan=before.plan,
            new_plan=after.plan,
            metadata={
                "status": after.subscription_status,
                "failure_count": after.payment_failure_count,
                "grace_period_ends_at": _iso(after.grace_period_ends_at),
            },
            now=ts,
        )
        if started:
            events.append(LifecycleEventType.GRACE_PERIOD_STARTED.value)
            event_log.record_event(
                session,
                account_id=account_id,
                event_type=LifecycleEventType.GRACE_PERIOD_STARTED,
                correlation_id=correlation_id,
                previous_plan=before.plan,
                new_plan=after.plan,
                metadata={"grace_period_ends_at": _iso(deadline), "grace_period_days": settings.GRACE_PERIOD_DAYS},
                now=ts,
            )

    return TransitionResult(
        account=after,
        previous_plan=before.plan,
        kind="grace_period_started" if started else "failure_counted",
        events=events,
    )


def record_payment_recovery(account_id: str, correlation_id: str, *, now: Optional[datetime] = None) -> TransitionResult:
    """Return a failing account to active and close its grace period."""
    ts = now or utc_now()
    cleared = dict(
        subscription_status=SubscriptionStatus.ACTIVE.value,
        payment_failure_count=0,
        payment_failed_at=None,
        grace_period_ends_at=None,
        updated_at=ts,
    )

    with get_db_session() as session:
        before = _load(session, account_id)
        recovered = session.execute(
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.subscription_status.in_([
                SubscriptionStatus.GRACE_PERIOD.value,
                SubscriptionStatus.PAST_DUE.value,
            ]))
            .values(**cleared)
        ).rowcount

        if recovered == 0:
            # Stray counter on an active account
            recovered = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .where(accounts.c.subscription_status == SubscriptionStatus.ACTIVE.value)
                .where(accounts.c.payment_failure_count > 0)
                .values(**cleared)
            ).rowcount

        if recovered == 0:
            raise PolicyViolationError(
                f"No failed payment to recover (status={before.subscription_status})"
            )

        after = _load(session, account_id)
        event_log.record_event(
            session,
            account_id=account_id,
            event_type=LifecycleEventType.PAYMENT_RECOVERED,
            correlation_id=correlation_id,
            previous_plan=before.plan,
            new_plan=after.plan,
            metadata={
                "status": after.subscription_status,
                "failure_count": 0,
                "previous_failure_count": before.payment_failure_count,
                "grace_period_ends_at": None,
            },
            now=ts,
        )

    return TransitionResult(
        account=after,
        previous_plan=before.plan,
        kind="recovered",
        events=[LifecycleEventType.PAYMENT_RECOVERED.value],
    )


def downgrade(
    account_id: str,
    correlation_id: str,
    *,
    trigger: LifecycleEventType,
    now: Optional[datetime] = None,
    cascade: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    """Move a paying account to the free tier.

    trigger is SUBSCRIPTION_CANCELED (immediate, skips any remaining grace) or
    GRACE_PERIOD_ENDED (only once the deadline has passed). cascade is stored
    on the events so an interrupted cascade can be resumed with the same
    archive options.
    """
    ts = now or utc_now()

    with get_db_session() as session:
        before = _load(session, account_id)
        stmt = (
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.plan == before.plan)
        )
        if trigger == LifecycleEventType.GRACE_PERIOD_ENDED:
            stmt = (
                stmt.where(accounts.c.subscription_status == SubscriptionStatus.GRACE_PERIOD.value)
                .where(accounts.c.grace_period_ends_at <= ts)
            )
        elif trigger == LifecycleEventType.SUBSCRIPTION_CANCELED:
            stmt = stmt.where(accounts.c.subscription_status.in_(PAYING_STATUSES))
        else:
            raise ValueError(f"Unsupported downgrade trigger: {trigger}")

        previous_plan = before.plan if is_paid(before.plan) else None
        applied = session.execute(
            stmt.values(
                plan=FREE_PLAN_ID,
                subscription_status=SubscriptionStatus.FREE.value,
                previous_plan=previous_plan,
                downgraded_at=ts,
                grace_period_ends_at=None,
                payment_failure_count=0,
                payment_failed_at=None,
                updated_at=ts,
            )
        ).rowcount

        if applied == 0:
            raise PolicyViolationError(
                f"Downgrade ({trigger.value}) not applicable from status {before.subscription_status}"
            )

        after = _load(session, account_id)
        for event_type in (trigger, LifecycleEventType.DOWNGRADE_INITIATED):
            event_log.record_event(
                session,
                account_id=account_id,
                event_type=event_type,
                correlation_id=correlation_id,
                previous_plan=before.plan,
                new_plan=FREE_PLAN_ID,
                metadata={
                    "trigger": trigger.value,
                    "previous_status": before.subscription_status,
                    "failure_count": before.payment_failure_count,
                    **(cascade or {}),
                },
                now=ts,
            )

    logger.info(
        "[lifecycle] account downgraded",
        extra={"account_id": account_id, "correlation_id": correlation_id, "event_type": trigger.value},
    )
    return TransitionResult(
        account=after,
        previous_plan=before.plan,
        kind="downgraded",
        events=[trigger.value, LifecycleEventType.DOWNGRADE_INITIATED.value],
    )


def resubscribe(
    account_id: str,
    correlation_id: str,
    new_plan: str,
    *,
    now: Optional[datetime] = None,
    stripe_customer_id: Optional[str] = None,
) -> TransitionResult:
    """Put an account back on a paid plan.

    From free/canceled (or a still-failing grace/past_due account) this is a
    restore: previous plan and downgrade timestamp are cleared and the
    caller runs the restore cascade. From active on another plan it is a
    plain plan change. A given stripe_customer_id is linked in the same
    transaction (see link_customer).
    """
    plan = get_plan(new_plan)
    if not plan.is_paid:
        raise ValidationError(f"Resubscription requires a paid plan, got {new_plan}")
    ts = now or utc_now()

    with get_db_session() as session:
        before = _load(session, account_id)
        guarded = (
            update(accounts)
            .where(accounts.c.account_id == account_id)
            .where(accounts.c.subscription_status == before.subscription_status)
            .where(accounts.c.plan == before.plan)
        )

        if before.subscription_status == SubscriptionStatus.ACTIVE.value:
            if before.plan == plan.plan_id:
                raise PolicyViolationError(f"Account already active on plan {plan.plan_id}")
            applied = session.execute(
                guarded.values(plan=plan.plan_id, updated_at=ts)
            ).rowcount
            kind = "plan_change"
            event_type = LifecycleEventType.SUBSCRIPTION_UPDATED
        else:
            applied = session.execute(
                guarded.values(
                    plan=plan.plan_id,
                    subscription_status=SubscriptionStatus.ACTIVE.value,
                    previous_plan=None,
                    downgraded_at=None,
                    grace_period_ends_at=None,
                    payment_failure_count=0,
                    payment_failed_at=None,
                    updated_at=ts,
                )
            ).rowcount
            kind = "restore"
            event_type = LifecycleEventType.SUBSCRIPTION_RESUMED

        if applied == 0:
            raise PolicyViolationError(
                f"Account {account_id} changed concurrently; resubscription not applied"
            )

        linked = link_customer(session, account_id, stripe_customer_id, now=ts) if stripe_customer_id else False

        after = _load(session, account_id)
        event_log.record_event(
            session,
            account_id=account_id,
            event_type=event_type,
            correlation_id=correlation_id,
            previous_plan=before.plan,
            new_plan=plan.plan_id,
            metadata={
                "status": after.subscription_status,
                "previous_status": before.subscription_status,
                "restored_from_plan": before.previous_plan,
                "stripe_customer_linked": stripe_customer_id if linked else None,
            },
            now=ts,
        )

    return TransitionResult(
        account=after,
        previous_plan=before.plan,
        kind=kind,
        events=[event_type.value],
    )
