"""
Lifecycle orchestrator.

One entry point per billing event plus the time-driven sweep. Each entry
point resolves the account, returns the recorded outcome when the
correlation id already completed, and otherwise runs:

    transition -> archive -> schedule deletion -> downgrade_completed
    transition -> cancel deletion -> restore galleries -> restore_completed

Every step commits together with its own "<correlation_id>:<event_type>"
event, so a redelivered event skips finished steps and resumes the rest.
A step failure after the transition committed is recorded as
cascade_step_failed, the remaining steps still run, and
PartialCascadeFailureError is raised so the webhook is redelivered. The
sweep also picks up any cascade left without its completion event.

Directory push and email run after commit and never fail an entry point.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gallery_backend.core.database import get_db_session
from gallery_backend.core.errors import PartialCascadeFailureError, PolicyViolationError
from gallery_backend.core.logging import log_event
from gallery_backend.core.metrics import (
    lifecycle_cascade_failures_total,
    lifecycle_last_sweep_downgraded,
    lifecycle_pending_deletion_warnings,
    lifecycle_replays_total,
    lifecycle_transitions_total,
)
from gallery_backend.features.identity import directory
from gallery_backend.features.lifecycle import archival, event_log, jobs, scheduler, state_machine
from gallery_backend.features.notifications import email
from gallery_backend.features.plans.service import FREE_PLAN_ID, gallery_limit, get_plan
from gallery_backend.models.lifecycle import (
    AccountSnapshot,
    ArchiveReason,
    LifecycleEventType,
    LifecycleOutcome,
    ScheduledDeletion,
    SubscriptionStatus,
    utc_now,
)


logger = logging.getLogger("gallery.lifecycle.orchestrator")

GRACE_SWEEP_JOB = "lifecycle.grace_period_sweep"
WARNING_SCAN_JOB = "lifecycle.deletion_warning_scan"

_ACTION_BY_TRIGGER = {
    LifecycleEventType.SUBSCRIPTION_CANCELED.value: "subscription_canceled",
    LifecycleEventType.GRACE_PERIOD_ENDED.value: "grace_period_ended",
}

_CANCELLATION_REASONS = {
    LifecycleEventType.SUBSCRIPTION_CANCELED.value: "Subscription canceled",
    LifecycleEventType.GRACE_PERIOD_ENDED.value: "Grace period expired, payment not recovered",
}


def sweep_correlation_id(account_id: str, now: datetime) -> str:
    """One sweep correlation per account per UTC day."""
    return f"sweep:{now.date().isoformat()}:{account_id}"


# ---------------------------------------------------------------------------
# Step plumbing
# ---------------------------------------------------------------------------

def _replay(correlation_id: str, terminal_type: LifecycleEventType, action: str) -> Optional[LifecycleOutcome]:
    """Recorded outcome for a correlation id whose terminal event exists."""
    with get_db_session() as session:
        row = event_log.get_event(session, correlation_id, terminal_type)
    if row is None:
        return None

    data = dict(row._mapping["metadata"] or {})
    data.setdefault("previous_plan", row.previous_plan)
    data.setdefault("new_plan", row.new_plan)
    data.update(account_id=row.account_id, correlation_id=correlation_id, action=action)
    outcome = LifecycleOutcome.from_dict(data)
    outcome.already_processed = True

    lifecycle_replays_total.inc(labels={"action": action})
    log_event(
        "info",
        "lifecycle.replay",
        correlation_id=correlation_id,
        account_id=row.account_id,
        event_type=terminal_type.value,
    )
    return outcome


def _ignored(account: AccountSnapshot, correlation_id: str, action: str, exc: PolicyViolationError) -> LifecycleOutcome:
    lifecycle_transitions_total.inc(labels={"action": action, "result": "ignored"})
    log_event(
        "warning",
        f"lifecycle.ignored: {exc.message}",
        correlation_id=correlation_id,
        account_id=account.account_id,
        error_code=exc.code,
    )
    return LifecycleOutcome(
        account_id=account.account_id,
        correlation_id=correlation_id,
        action=action,
        status=account.subscription_status,
        previous_plan=account.plan,
        new_plan=account.plan,
        failure_count=account.payment_failure_count,
        ignored=True,
        reason=exc.message,
    )


def _run_step(
    account_id: str,
    correlation_id: str,
    event_type: LifecycleEventType,
    effect: Callable[[Session], Dict[str, Any]],
    *,
    previous_plan: Optional[str],
    new_plan: Optional[str],
    now: datetime,
) -> Tuple[Dict[str, Any], bool]:
    """Apply one cascade step at most once. Returns (metadata, created).

    The effect and its event share a transaction. Losing the insert race to
    a concurrent delivery rolls the effect back; the retry then finds the
    winner's event and returns its metadata.
    """
    def _apply() -> Tuple[Dict[str, Any], bool]:
        with get_db_session() as session:
            existing = event_log.get_event(session, correlation_id, event_type)
            if existing is not None:
                return dict(existing._mapping["metadata"] or {}), False
            metadata = effect(session)
            event_log.record_event(
                session,
                account_id=account_id,
                event_type=event_type,
                correlation_id=correlation_id,
                previous_plan=previous_plan,
                new_plan=new_plan,
                metadata=metadata,
                now=now,
            )
        return metadata, True

    try:
        return _apply()
    except IntegrityError:
        logger.info(
            f"[lifecycle] {event_type.value} raced with a concurrent delivery, retrying",
            extra={"correlation_id": correlation_id, "account_id": account_id},
        )
        return _apply()


def _attempt_step(
    failed: List[str],
    account_id: str,
    correlation_id: str,
    event_type: LifecycleEventType,
    effect: Callable[[Session], Dict[str, Any]],
    **kwargs,
) -> Optional[Dict[str, Any]]:
    """Run a step, recording instead of raising when it fails."""
    try:
        metadata, _ = _run_step(account_id, correlation_id, event_type, effect, **kwargs)
        return metadata
    except Exception as exc:
        failed.append(event_type.value)
        lifecycle_cascade_failures_total.inc(labels={"step": event_type.value})
        log_event(
            "error",
            f"lifecycle.step_failed: {exc}",
            correlation_id=correlation_id,
            account_id=account_id,
            event_type=event_type.value,
            error_code="cascade_step_failed",
        )
        event_log.record_failure(
            account_id=account_id,
            correlation_id=correlation_id,
            step=event_type.value,
            error=str(exc),
            now=kwargs.get("now"),
        )
        return None


def _complete(
    outcome: LifecycleOutcome,
    terminal_type: LifecycleEventType,
    failed: List[str],
    *,
    now: datetime,
) -> bool:
    """Write the terminal event, or raise when any step failed. Returns created."""
    if failed:
        outcome.failed_steps = list(failed)
        lifecycle_transitions_total.inc(labels={"action": outcome.action, "result": "partial"})
        raise PartialCascadeFailureError(
            f"{outcome.action} cascade incomplete for {outcome.account_id}: {', '.join(failed)}",
            failed_steps=failed,
            outcome=outcome,
        )

    payload = outcome.to_dict()
    payload.pop("already_processed", None)
    recorded, created = _run_step(
        outcome.account_id,
        outcome.correlation_id,
        terminal_type,
        lambda session: payload,
        previous_plan=outcome.previous_plan,
        new_plan=outcome.new_plan,
        now=now,
    )
    if not created:
        # Concurrent delivery finished first; report what it recorded
        for key, value in recorded.items():
            if key in LifecycleOutcome.__dataclass_fields__ and key not in ("account_id", "correlation_id", "action"):
                setattr(outcome, key, value)
        outcome.already_processed = True
    return created


def _push_directory(account_id: str) -> None:
    try:
        directory.push_account_state(state_machine.get_account(account_id))
    except Exception as exc:
        logger.warning(f"[lifecycle] directory push skipped: {exc}", extra={"account_id": account_id})


def _started_event(correlation_id: str, event_type: LifecycleEventType):
    with get_db_session() as session:
        return event_log.get_event(session, correlation_id, event_type)


# ---------------------------------------------------------------------------
# Cascades
# ---------------------------------------------------------------------------

def _run_downgrade(
    account: AccountSnapshot,
    correlation_id: str,
    *,
    trigger: LifecycleEventType,
    keep_gallery_ids: Optional[Iterable[str]] = None,
    reason: ArchiveReason = ArchiveReason.DOWNGRADE,
    now: datetime,
) -> LifecycleOutcome:
    action = _ACTION_BY_TRIGGER[trigger.value]
    account_id = account.account_id
    keep_ids = list(keep_gallery_ids) if keep_gallery_ids is not None else None

    initiated = _started_event(correlation_id, LifecycleEventType.DOWNGRADE_INITIATED)
    transitioned = False
    if initiated is None:
        try:
            result = state_machine.downgrade(
                account_id,
                correlation_id,
                trigger=trigger,
                now=now,
                cascade={"keep_gallery_ids": keep_ids, "archive_reason": reason.value},
            )
        except PolicyViolationError as exc:
            return _ignored(account, correlation_id, action, exc)
        except IntegrityError:
            # A concurrent delivery committed the transition first
            initiated = _started_event(correlation_id, LifecycleEventType.DOWNGRADE_INITIATED)
            if initiated is None:
                raise
            previous_plan = initiated.previous_plan
        else:
            transitioned = True
            previous_plan = result.previous_plan
    else:
        previous_plan = initiated.previous_plan
        current = state_machine.get_account(account_id)
        if not current.is_downgraded:
            # Resubscribed since this cascade started; do not re-archive
            outcome = LifecycleOutcome(
                account_id=account_id,
                correlation_id=correlation_id,
                action=action,
                status=current.subscription_status,
                previous_plan=previous_plan,
                new_plan=FREE_PLAN_ID,
                ignored=True,
                reason="superseded by a later resubscription",
            )
            _complete(outcome, LifecycleEventType.DOWNGRADE_COMPLETED, [], now=now)
            return outcome

    if transitioned:
        _push_directory(account_id)

    limit = gallery_limit(FREE_PLAN_ID)
    failed: List[str] = []
    step_kwargs = dict(previous_plan=previous_plan, new_plan=FREE_PLAN_ID, now=now)
    outcome = LifecycleOutcome(
        account_id=account_id,
        correlation_id=correlation_id,
        action=action,
        status=SubscriptionStatus.FREE.value,
        previous_plan=previous_plan,
        new_plan=FREE_PLAN_ID,
        failure_count=0,
    )

    def _archive(session: Session) -> Dict[str, Any]:
        archived = archival.archive_excess(
            account_id, limit, keep_ids=keep_ids, reason=reason, now=now, session=session
        )
        return {"archived_count": archived, "limit": limit, "reason": reason.value, "keep_list": keep_ids is not None}

    def _schedule(session: Session) -> Dict[str, Any]:
        record, created = scheduler.schedule(account_id, now=now, session=session)
        return {
            "deletion_id": record.deletion_id,
            "scheduled_for": record.scheduled_for.isoformat(),
            "created": created,
        }

    archived_meta = _attempt_step(failed, account_id, correlation_id, LifecycleEventType.GALLERIES_ARCHIVED, _archive, **step_kwargs)
    if archived_meta is not None:
        outcome.archived_count = int(archived_meta.get("archived_count", 0))

    scheduled_meta = _attempt_step(failed, account_id, correlation_id, LifecycleEventType.DELETION_SCHEDULED, _schedule, **step_kwargs)
    if scheduled_meta is not None:
        outcome.deletion_scheduled = True

    created = _complete(outcome, LifecycleEventType.DOWNGRADE_COMPLETED, failed, now=now)
    if created:
        lifecycle_transitions_total.inc(labels={"action": action, "result": "applied"})
        log_event(
            "info",
            "lifecycle.downgrade_completed",
            correlation_id=correlation_id,
            account_id=account_id,
            event_type=LifecycleEventType.DOWNGRADE_COMPLETED.value,
            extra={"archived_count": outcome.archived_count, "previous_plan": previous_plan},
        )
        deletion = scheduler.get_active_deletion(account_id)
        downgraded = state_machine.get_account(account_id)
        email.send_downgrade_notice(
            downgraded,
            previous_plan=previous_plan,
            archived_count=outcome.archived_count,
            deletion_date=deletion.scheduled_for if deletion else None,
        )
        email.send_operator_cancellation_notice(
            downgraded,
            previous_plan=previous_plan,
            reason=_CANCELLATION_REASONS[trigger.value],
            archived_count=outcome.archived_count,
        )
    return outcome


def _run_restore(
    account: AccountSnapshot,
    correlation_id: str,
    new_plan: str,
    *,
    now: datetime,
    stripe_customer_id: Optional[str] = None,
) -> LifecycleOutcome:
    action = "subscription_resumed"
    account_id = account.account_id

    resumed = _started_event(correlation_id, LifecycleEventType.SUBSCRIPTION_RESUMED)
    transitioned = False
    if resumed is None:
        try:
            result = state_machine.resubscribe(
                account_id, correlation_id, new_plan, now=now, stripe_customer_id=stripe_customer_id
            )
        except PolicyViolationError as exc:
            if stripe_customer_id:
                # Already on this plan; still remember who pays for it
                with get_db_session() as session:
                    state_machine.link_customer(session, account_id, stripe_customer_id, now=now)
            return _ignored(account, correlation_id, action, exc)
        except IntegrityError:
            resumed = _started_event(correlation_id, LifecycleEventType.SUBSCRIPTION_RESUMED)
            if resumed is None:
                raise
            previous_plan = resumed.previous_plan
        else:
            if result.kind == "plan_change":
                _push_directory(account_id)
                lifecycle_transitions_total.inc(labels={"action": action, "result": "plan_change"})
                return LifecycleOutcome(
                    account_id=account_id,
                    correlation_id=correlation_id,
                    action=action,
                    status=result.account.subscription_status,
                    previous_plan=result.previous_plan,
                    new_plan=result.account.plan,
                    failure_count=result.account.payment_failure_count,
                    reason="plan_change",
                )
            transitioned = True
            previous_plan = result.previous_plan
    else:
        previous_plan = resumed.previous_plan
        current = state_machine.get_account(account_id)
        if current.is_downgraded:
            # Downgraded again since this restore started
            outcome = LifecycleOutcome(
                account_id=account_id,
                correlation_id=correlation_id,
                action=action,
                status=current.subscription_status,
                previous_plan=previous_plan,
                new_plan=new_plan,
                ignored=True,
                reason="superseded by a later downgrade",
            )
            _complete(outcome, LifecycleEventType.RESTORE_COMPLETED, [], now=now)
            return outcome

    if transitioned:
        _push_directory(account_id)

    failed: List[str] = []
    step_kwargs = dict(previous_plan=previous_plan, new_plan=new_plan, now=now)
    outcome = LifecycleOutcome(
        account_id=account_id,
        correlation_id=correlation_id,
        action=action,
        status=SubscriptionStatus.ACTIVE.value,
        previous_plan=previous_plan,
        new_plan=new_plan,
        failure_count=0,
    )

    canceled_meta = _attempt_step(
        failed, account_id, correlation_id, LifecycleEventType.DELETION_CANCELED,
        lambda session: {"deletions_canceled": scheduler.cancel(account_id, now=now, session=session)},
        **step_kwargs,
    )
    if canceled_meta is not None:
        outcome.deletions_canceled = int(canceled_meta.get("deletions_canceled", 0))

    restored_meta = _attempt_step(
        failed, account_id, correlation_id, LifecycleEventType.GALLERIES_RESTORED,
        lambda session: {"restored_count": archival.restore_archived(account_id, session=session)},
        **step_kwargs,
    )
    if restored_meta is not None:
        outcome.restored_count = int(restored_meta.get("restored_count", 0))

    if _complete(outcome, LifecycleEventType.RESTORE_COMPLETED, failed, now=now):
        lifecycle_transitions_total.inc(labels={"action": action, "result": "applied"})
        log_event(
            "info",
            "lifecycle.restore_completed",
            correlation_id=correlation_id,
            account_id=account_id,
            event_type=LifecycleEventType.RESTORE_COMPLETED.value,
            extra={"restored_count": outcome.restored_count, "new_plan": new_plan},
        )
    return outcome


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def on_payment_failed(customer_ref: str, correlation_id: str, *, now: Optional[datetime] = None) -> LifecycleOutcome:
    """Count a failed payment; the first one in an episode opens the grace period."""
    ts = now or utc_now()
    action = "payment_failed"
    account = state_machine.resolve_account(customer_ref)

    replay = _replay(correlation_id, LifecycleEventType.PAYMENT_FAILED, action)
    if replay is not None:
        return replay

    try:
        result = state_machine.record_payment_failure(account.account_id, correlation_id, now=ts)
    except PolicyViolationError as exc:
        return _ignored(account, correlation_id, action, exc)
    except IntegrityError:
        replay = _replay(correlation_id, LifecycleEventType.PAYMENT_FAILED, action)
        if replay is None:
            raise
        return replay

    after = result.account
    lifecycle_transitions_total.inc(labels={"action": action, "result": result.kind})
    log_event(
        "info",
        f"lifecycle.{result.kind}",
        correlation_id=correlation_id,
        account_id=after.account_id,
        event_type=LifecycleEventType.PAYMENT_FAILED.value,
        extra={"failure_count": after.payment_failure_count},
    )

    _push_directory(after.account_id)
    if result.kind == "grace_period_started":
        email.send_payment_failed_notice(after)

    return LifecycleOutcome(
        account_id=after.account_id,
        correlation_id=correlation_id,
        action=action,
        status=after.subscription_status,
        previous_plan=result.previous_plan,
        new_plan=after.plan,
        failure_count=after.payment_failure_count,
        grace_period_ends_at=after.grace_period_ends_at.isoformat() if after.grace_period_ends_at else None,
    )


def on_payment_recovered(customer_ref: str, correlation_id: str, *, now: Optional[datetime] = None) -> LifecycleOutcome:
    """Close the grace period after a successful payment."""
    ts = now or utc_now()
    action = "payment_recovered"
    account = state_machine.resolve_account(customer_ref)

    replay = _replay(correlation_id, LifecycleEventType.PAYMENT_RECOVERED, action)
    if replay is not None:
        return replay

    try:
        result = state_machine.record_payment_recovery(account.account_id, correlation_id, now=ts)
    except PolicyViolationError as exc:
        return _ignored(account, correlation_id, action, exc)
    except IntegrityError:
        replay = _replay(correlation_id, LifecycleEventType.PAYMENT_RECOVERED, action)
        if replay is None:
            raise
        return replay

    after = result.account
    lifecycle_transitions_total.inc(labels={"action": action, "result": result.kind})
    log_event(
        "info",
        "lifecycle.payment_recovered",
        correlation_id=correlation_id,
        account_id=after.account_id,
        event_type=LifecycleEventType.PAYMENT_RECOVERED.value,
    )
    _push_directory(after.account_id)

    return LifecycleOutcome(
        account_id=after.account_id,
        correlation_id=correlation_id,
        action=action,
        status=after.subscription_status,
        previous_plan=result.previous_plan,
        new_plan=after.plan,
        failure_count=after.payment_failure_count,
    )


def on_subscription_canceled(
    customer_ref: str,
    correlation_id: str,
    keep_gallery_ids: Optional[Iterable[str]] = None,
    *,
    now: Optional[datetime] = None,
) -> LifecycleOutcome:
    """Downgrade immediately, skipping any remaining grace period."""
    ts = now or utc_now()
    account = state_machine.resolve_account(customer_ref)

    replay = _replay(correlation_id, LifecycleEventType.DOWNGRADE_COMPLETED, "subscription_canceled")
    if replay is not None:
        return replay

    return _run_downgrade(
        account,
        correlation_id,
        trigger=LifecycleEventType.SUBSCRIPTION_CANCELED,
        keep_gallery_ids=keep_gallery_ids,
        reason=ArchiveReason.DOWNGRADE,
        now=ts,
    )


def on_subscription_resumed(
    customer_ref: str,
    correlation_id: str,
    new_plan: str,
    *,
    now: Optional[datetime] = None,
    stripe_customer_id: Optional[str] = None,
) -> LifecycleOutcome:
    """Resubscription: restore a downgraded account or change an active plan.

    stripe_customer_id, when given, is linked to the account in the same
    transaction as the transition so later invoice events resolve.
    """
    ts = now or utc_now()
    get_plan(new_plan)
    account = state_machine.resolve_account(customer_ref)

    replay = _replay(correlation_id, LifecycleEventType.RESTORE_COMPLETED, "subscription_resumed")
    if replay is None:
        replay = _replay(correlation_id, LifecycleEventType.SUBSCRIPTION_UPDATED, "subscription_resumed")
    if replay is not None:
        return replay

    return _run_restore(account, correlation_id, new_plan, now=ts, stripe_customer_id=stripe_customer_id)


def _resume_incomplete(now: datetime, skip: set) -> Tuple[int, List[str]]:
    """Finish downgrade and restore cascades that never wrote a completion event."""
    resumed = 0
    errors: List[str] = []

    for pending in event_log.find_incomplete_cascades(
        LifecycleEventType.DOWNGRADE_INITIATED, LifecycleEventType.DOWNGRADE_COMPLETED
    ):
        if pending["correlation_id"] in skip:
            continue
        metadata = pending["metadata"]
        trigger = LifecycleEventType(metadata.get("trigger", LifecycleEventType.SUBSCRIPTION_CANCELED.value))
        try:
            _run_downgrade(
                state_machine.get_account(pending["account_id"]),
                pending["correlation_id"],
                trigger=trigger,
                keep_gallery_ids=metadata.get("keep_gallery_ids"),
                reason=ArchiveReason(metadata.get("archive_reason", ArchiveReason.DOWNGRADE.value)),
                now=now,
            )
            resumed += 1
        except Exception as exc:
            errors.append(f"{pending['account_id']}: {exc}")

    for pending in event_log.find_incomplete_cascades(
        LifecycleEventType.SUBSCRIPTION_RESUMED, LifecycleEventType.RESTORE_COMPLETED
    ):
        if pending["correlation_id"] in skip:
            continue
        try:
            _run_restore(
                state_machine.get_account(pending["account_id"]),
                pending["correlation_id"],
                pending["new_plan"],
                now=now,
            )
            resumed += 1
        except Exception as exc:
            errors.append(f"{pending['account_id']}: {exc}")

    return resumed, errors


def run_grace_period_sweep(*, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Downgrade every account whose grace period has expired.

    Per-account failures are collected, never raised, so one bad account
    cannot stall the rest. Safe to run on several instances at once.
    """
    ts = now or utc_now()
    started = utc_now()
    stats: Dict[str, Any] = {
        "processed": 0,
        "downgraded": 0,
        "galleries_archived": 0,
        "ignored": 0,
        "resumed": 0,
        "errors": [],
    }
    handled = set()

    for account in scheduler.list_expired_grace_periods(now=ts):
        stats["processed"] += 1
        correlation_id = sweep_correlation_id(account.account_id, ts)
        handled.add(correlation_id)
        try:
            replay = _replay(correlation_id, LifecycleEventType.DOWNGRADE_COMPLETED, "grace_period_ended")
            outcome = replay or _run_downgrade(
                account,
                correlation_id,
                trigger=LifecycleEventType.GRACE_PERIOD_ENDED,
                reason=ArchiveReason.PAYMENT_FAILED,
                now=ts,
            )
        except Exception as exc:
            stats["errors"].append(f"{account.account_id}: {exc}")
            continue
        if outcome.ignored:
            stats["ignored"] += 1
        elif not outcome.already_processed:
            stats["downgraded"] += 1
            stats["galleries_archived"] += outcome.archived_count

    resumed, errors = _resume_incomplete(ts, handled)
    stats["resumed"] = resumed
    stats["errors"].extend(errors)

    stats["status"] = jobs.record_job_run(GRACE_SWEEP_JOB, started, stats)
    lifecycle_last_sweep_downgraded.set(stats["downgraded"])
    log_event(
        "info",
        "lifecycle.grace_sweep_finished",
        correlation_id=f"sweep:{ts.date().isoformat()}",
        extra={k: v for k, v in stats.items() if k != "errors"},
    )
    return stats


def list_pending_deletion_warnings(lead_days: Optional[int] = None, *, now: Optional[datetime] = None) -> List[ScheduledDeletion]:
    pending = scheduler.list_pending_warnings(lead_days, now=now)
    lifecycle_pending_deletion_warnings.set(len(pending))
    return pending


def mark_warning_sent(deletion_id: int, *, now: Optional[datetime] = None) -> bool:
    return scheduler.mark_warning_sent(deletion_id, now=now)


def run_deletion_warning_scan(lead_days: Optional[int] = None, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Email each pending warning and mark it sent only after delivery."""
    ts = now or utc_now()
    started = utc_now()
    stats: Dict[str, Any] = {"pending": 0, "sent": 0, "failed": 0, "errors": []}

    pending = list_pending_deletion_warnings(lead_days, now=ts)
    stats["pending"] = len(pending)
    for deletion in pending:
        try:
            account = state_machine.get_account(deletion.account_id)
            if not email.send_deletion_warning(account, scheduled_for=deletion.scheduled_for):
                stats["failed"] += 1
                continue
            if mark_warning_sent(deletion.deletion_id, now=ts):
                stats["sent"] += 1
        except Exception as exc:
            stats["errors"].append(f"{deletion.deletion_id}: {exc}")

    stats["status"] = jobs.record_job_run(WARNING_SCAN_JOB, started, stats)
    return stats
