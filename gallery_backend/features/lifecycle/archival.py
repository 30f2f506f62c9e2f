"""
Capacity archival policy.

Decides which galleries stay active when an account drops to a lower plan
and reverses that on upgrade. Archival only flips archived_at and
archived_reason; gallery content is never touched here.

Automatic path keeps the N oldest active galleries (created_at ascending,
gallery_id as tie-break) so a photographer's longest-standing deliveries
survive. An explicit keep-list from the account owner overrides that.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from gallery_backend.core.database import galleries, session_scope
from gallery_backend.core.errors import ValidationError
from gallery_backend.models.lifecycle import ArchiveReason, utc_now


logger = logging.getLogger("gallery.lifecycle.archival")


def _reason_value(reason) -> str:
    return reason.value if isinstance(reason, ArchiveReason) else ArchiveReason(reason).value


def select_keep_set(session: Session, account_id: str, limit: int) -> List[str]:
    """Ids of the `limit` oldest non-archived galleries."""
    rows = session.execute(
        select(galleries.c.gallery_id)
        .where(galleries.c.account_id == account_id)
        .where(galleries.c.archived_at.is_(None))
        .order_by(galleries.c.created_at.asc(), galleries.c.gallery_id.asc())
        .limit(limit)
    ).fetchall()
    return [row.gallery_id for row in rows]


def archive_excess(
    account_id: str,
    limit: Optional[int],
    *,
    keep_ids: Optional[Iterable[str]] = None,
    reason=ArchiveReason.DOWNGRADE,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> int:
    """Archive every active gallery outside the keep set. Returns the count archived.

    limit=None means unlimited and archives nothing unless a keep-list is given.
    """
    ts = now or utc_now()
    reason_value = _reason_value(reason)
    if limit is not None and limit < 0:
        raise ValidationError(f"Gallery limit must be >= 0, got {limit}")

    with session_scope(session) as s:
        if keep_ids is not None:
            keep = list(dict.fromkeys(keep_ids))
        elif limit is None:
            return 0
        else:
            keep = select_keep_set(s, account_id, limit)

        stmt = (
            update(galleries)
            .where(galleries.c.account_id == account_id)
            .where(galleries.c.archived_at.is_(None))
        )
        if keep:
            stmt = stmt.where(galleries.c.gallery_id.not_in(keep))

        archived = s.execute(
            stmt.values(archived_at=ts, archived_reason=reason_value)
        ).rowcount or 0

    logger.info(
        "[archival] archived excess galleries",
        extra={"account_id": account_id, "archived": archived, "kept": len(keep), "reason": reason_value},
    )
    return archived


def restore_archived(
    account_id: str,
    *,
    session: Optional[Session] = None,
) -> int:
    """Un-archive every archived gallery for the account. Returns the count restored.

    Does not re-check the plan limit; new-content enforcement lives elsewhere.
    """
    with session_scope(session) as s:
        restored = s.execute(
            update(galleries)
            .where(galleries.c.account_id == account_id)
            .where(galleries.c.archived_at.is_not(None))
            .values(archived_at=None, archived_reason=None)
        ).rowcount or 0

    logger.info(
        "[archival] restored archived galleries",
        extra={"account_id": account_id, "restored": restored},
    )
    return restored


def count_active(account_id: str, *, session: Optional[Session] = None) -> int:
    with session_scope(session) as s:
        return s.execute(
            select(func.count())
            .select_from(galleries)
            .where(galleries.c.account_id == account_id)
            .where(galleries.c.archived_at.is_(None))
        ).scalar() or 0


def list_archived(account_id: str, *, session: Optional[Session] = None) -> List[str]:
    with session_scope(session) as s:
        rows = s.execute(
            select(galleries.c.gallery_id)
            .where(galleries.c.account_id == account_id)
            .where(galleries.c.archived_at.is_not(None))
            .order_by(galleries.c.created_at.asc(), galleries.c.gallery_id.asc())
        ).fetchall()
    return [row.gallery_id for row in rows]
