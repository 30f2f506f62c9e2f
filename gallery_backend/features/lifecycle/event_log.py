"""
Lifecycle event log.

Append-only audit of every lifecycle step. Step events carry an
idempotency key of "<correlation_id>:<event_type>"; the unique constraint on
that key is what lets a replayed billing event detect the work it already
did. Failure rows are unkeyed so each failed attempt stays visible.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, exists, and_
from sqlalchemy.orm import Session

from gallery_backend.core.database import get_db_session, lifecycle_events
from gallery_backend.models.lifecycle import LifecycleEventType, utc_now


def idempotency_key(correlation_id: str, event_type: str) -> str:
    return f"{correlation_id}:{event_type}"


def _type_value(event_type) -> str:
    return event_type.value if isinstance(event_type, LifecycleEventType) else str(event_type)


def record_event(
    session: Session,
    *,
    account_id: str,
    event_type,
    correlation_id: str,
    previous_plan: Optional[str] = None,
    new_plan: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    keyed: bool = True,
) -> None:
    """Append one event inside the caller's transaction.

    Raises IntegrityError when a keyed event for the same correlation id and
    type already exists; callers treat that as "another delivery won".
    """
    etype = _type_value(event_type)
    session.execute(
        insert(lifecycle_events).values(
            account_id=account_id,
            event_type=etype,
            previous_plan=previous_plan,
            new_plan=new_plan,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key(correlation_id, etype) if keyed else None,
            metadata=metadata or {},
            created_at=now or utc_now(),
        )
    )


def get_event(session: Session, correlation_id: str, event_type):
    """Return the keyed event row for (correlation_id, event_type), if any."""
    etype = _type_value(event_type)
    return session.execute(
        select(lifecycle_events).where(
            lifecycle_events.c.idempotency_key == idempotency_key(correlation_id, etype)
        )
    ).fetchone()


def record_failure(
    *,
    account_id: str,
    correlation_id: str,
    step: str,
    error: str,
    now: Optional[datetime] = None,
) -> None:
    """Record a failed cascade step in its own transaction."""
    with get_db_session() as session:
        record_event(
            session,
            account_id=account_id,
            event_type=LifecycleEventType.CASCADE_STEP_FAILED,
            correlation_id=correlation_id,
            metadata={"step": step, "error": error[:500]},
            now=now,
            keyed=False,
        )


def list_events(account_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Newest-first audit trail for one account."""
    with get_db_session() as session:
        rows = session.execute(
            select(lifecycle_events)
            .where(lifecycle_events.c.account_id == account_id)
            .order_by(lifecycle_events.c.created_at.desc(), lifecycle_events.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "id": row.id,
            "account_id": row.account_id,
            "event_type": row.event_type,
            "previous_plan": row.previous_plan,
            "new_plan": row.new_plan,
            "correlation_id": row.correlation_id,
            "metadata": row._mapping["metadata"] or {},
            "created_at": row.created_at,
        }
        for row in rows
    ]


def find_incomplete_cascades(start_type, end_type, limit: int = 100) -> List[Dict[str, Any]]:
    """Cascades whose start event was written but whose completion event was not."""
    start = lifecycle_events.alias("cascade_start")
    end = lifecycle_events.alias("cascade_end")
    stmt = (
        select(
            start.c.account_id,
            start.c.correlation_id,
            start.c.previous_plan,
            start.c.new_plan,
            start.c.metadata,
        )
        .where(start.c.event_type == _type_value(start_type))
        .where(
            ~exists().where(
                and_(
                    end.c.correlation_id == start.c.correlation_id,
                    end.c.event_type == _type_value(end_type),
                )
            )
        )
        .order_by(start.c.created_at.asc(), start.c.id.asc())
        .limit(limit)
    )
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [
        {
            "account_id": row.account_id,
            "correlation_id": row.correlation_id,
            "previous_plan": row.previous_plan,
            "new_plan": row.new_plan,
            "metadata": row._mapping["metadata"] or {},
        }
        for row in rows
    ]
