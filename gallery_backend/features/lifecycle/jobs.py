"""Job run records for the grace-period sweep and deletion-warning scan."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select, insert

from gallery_backend.core.database import get_db_session, lifecycle_job_runs
from gallery_backend.models.lifecycle import utc_now


def record_job_run(job_name: str, started_at: datetime, stats: Dict[str, Any]) -> str:
    """Persist one run. Status is partial when any per-item error was collected."""
    status = "partial" if stats.get("errors") else "success"
    with get_db_session() as session:
        session.execute(
            insert(lifecycle_job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=utc_now(),
                status=status,
                stats_json=json.dumps(stats, default=str),
            )
        )
    return status


def list_job_runs(job_name: str, limit: int = 20) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(lifecycle_job_runs)
            .where(lifecycle_job_runs.c.job_name == job_name)
            .order_by(lifecycle_job_runs.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "id": row.id,
            "job_name": row.job_name,
            "started_at": row.started_at,
            "finished_at": row.finished_at,
            "status": row.status,
            "stats": json.loads(row.stats_json) if row.stats_json else {},
        }
        for row in rows
    ]
