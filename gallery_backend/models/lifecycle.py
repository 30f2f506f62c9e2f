"""
Subscription lifecycle models.

Closed enums for account status, archive reasons, deletion types and
lifecycle event types, plus the snapshot/outcome types the orchestrator
hands back to webhook receivers and jobs.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the store to aware UTC.

    SQLite returns naive values for DateTime(timezone=True) columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    CANCELED = "canceled"
    FREE = "free"


# Statuses that still carry paid entitlements
PAYING_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.GRACE_PERIOD.value,
)

# Statuses a resubscription restores from
DOWNGRADED_STATUSES = (
    SubscriptionStatus.FREE.value,
    SubscriptionStatus.CANCELED.value,
)


class ArchiveReason(str, Enum):
    DOWNGRADE = "downgrade"
    PAYMENT_FAILED = "payment_failed"


class DeletionType(str, Enum):
    USER_STORAGE = "user_storage"


class LifecycleEventType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    GRACE_PERIOD_STARTED = "grace_period_started"
    PAYMENT_RECOVERED = "payment_recovered"
    GRACE_PERIOD_ENDED = "grace_period_ended"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    DOWNGRADE_INITIATED = "downgrade_initiated"
    GALLERIES_ARCHIVED = "galleries_archived"
    DELETION_SCHEDULED = "deletion_scheduled"
    DOWNGRADE_COMPLETED = "downgrade_completed"
    DELETION_CANCELED = "deletion_canceled"
    GALLERIES_RESTORED = "galleries_restored"
    RESTORE_COMPLETED = "restore_completed"
    DELETION_WARNING_SENT = "deletion_warning_sent"
    DELETION_EXECUTED = "deletion_executed"
    CASCADE_STEP_FAILED = "cascade_step_failed"


@dataclass(frozen=True)
class AccountSnapshot:
    """Read-only view of an accounts row."""
    account_id: str
    stripe_customer_id: Optional[str]
    email: Optional[str]
    display_name: Optional[str]
    plan: str
    subscription_status: str
    payment_failure_count: int
    payment_failed_at: Optional[datetime]
    grace_period_ends_at: Optional[datetime]
    previous_plan: Optional[str]
    downgraded_at: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "AccountSnapshot":
        return cls(
            account_id=row.account_id,
            stripe_customer_id=row.stripe_customer_id,
            email=row.email,
            display_name=row.display_name,
            plan=row.plan,
            subscription_status=row.subscription_status,
            payment_failure_count=int(row.payment_failure_count or 0),
            payment_failed_at=as_utc(row.payment_failed_at),
            grace_period_ends_at=as_utc(row.grace_period_ends_at),
            previous_plan=row.previous_plan,
            downgraded_at=as_utc(row.downgraded_at),
        )

    @property
    def is_downgraded(self) -> bool:
        return self.subscription_status in DOWNGRADED_STATUSES


@dataclass
class LifecycleOutcome:
    """Result of one orchestrator entry point.

    Stored in the terminal lifecycle event's metadata so a replay of the same
    correlation id can hand back the original outcome.
    """
    account_id: str
    correlation_id: str
    action: str
    status: Optional[str] = None
    previous_plan: Optional[str] = None
    new_plan: Optional[str] = None
    failure_count: Optional[int] = None
    grace_period_ends_at: Optional[str] = None
    archived_count: int = 0
    restored_count: int = 0
    deletion_scheduled: bool = False
    deletions_canceled: int = 0
    already_processed: bool = False
    ignored: bool = False
    reason: Optional[str] = None
    failed_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleOutcome":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class ScheduledDeletion:
    """Read-only view of a scheduled_deletions row."""
    deletion_id: int
    account_id: str
    deletion_type: str
    scheduled_for: datetime
    warning_sent_at: Optional[datetime]
    executed_at: Optional[datetime]
    canceled_at: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "ScheduledDeletion":
        return cls(
            deletion_id=row.deletion_id,
            account_id=row.account_id,
            deletion_type=row.deletion_type,
            scheduled_for=as_utc(row.scheduled_for),
            warning_sent_at=as_utc(row.warning_sent_at),
            executed_at=as_utc(row.executed_at),
            canceled_at=as_utc(row.canceled_at),
        )

    @property
    def is_active(self) -> bool:
        return self.executed_at is None and self.canceled_at is None
