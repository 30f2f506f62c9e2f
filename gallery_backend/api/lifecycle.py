"""
Lifecycle operator API.

Endpoints (all require the X-Admin-Key header):
- GET  /v1/lifecycle/deletions/warnings?lead_days=N
- POST /v1/lifecycle/deletions/{deletion_id}/warning-sent
- GET  /v1/lifecycle/accounts/{account_id}/events
- GET  /v1/lifecycle/jobs/{job_name}
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from gallery_backend.core.config import settings
from gallery_backend.features.lifecycle import event_log, jobs, orchestrator


logger = logging.getLogger("gallery.lifecycle.api")

router = APIRouter(prefix="/v1/lifecycle", tags=["lifecycle"])


def verify_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or not secrets.compare_digest(x_admin_key, admin_key):
        logger.warning(f"[lifecycle] invalid admin key attempt: {x_admin_key[:4] if x_admin_key else 'none'}...")
        raise HTTPException(status_code=403, detail="Invalid or missing X-Admin-Key header")
    return x_admin_key


class PendingWarning(BaseModel):
    deletion_id: int
    account_id: str
    deletion_type: str
    scheduled_for: datetime


class PendingWarningsResponse(BaseModel):
    lead_days: Optional[int]
    count: int
    deletions: List[PendingWarning]


class LifecycleEventView(BaseModel):
    id: int
    event_type: str
    previous_plan: Optional[str] = None
    new_plan: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime


@router.get("/deletions/warnings", response_model=PendingWarningsResponse, dependencies=[Depends(verify_admin_key)])
def pending_deletion_warnings(lead_days: Optional[int] = Query(None, ge=0)):
    pending = orchestrator.list_pending_deletion_warnings(lead_days)
    return PendingWarningsResponse(
        lead_days=lead_days,
        count=len(pending),
        deletions=[
            PendingWarning(
                deletion_id=d.deletion_id,
                account_id=d.account_id,
                deletion_type=d.deletion_type,
                scheduled_for=d.scheduled_for,
            )
            for d in pending
        ],
    )


@router.post("/deletions/{deletion_id}/warning-sent", dependencies=[Depends(verify_admin_key)])
def deletion_warning_sent(deletion_id: int):
    """Record an externally delivered warning. marked=false means nothing changed."""
    return {"deletion_id": deletion_id, "marked": orchestrator.mark_warning_sent(deletion_id)}


@router.get("/accounts/{account_id}/events", response_model=List[LifecycleEventView], dependencies=[Depends(verify_admin_key)])
def account_events(account_id: str, limit: int = Query(100, ge=1, le=500)):
    return [LifecycleEventView(**{k: v for k, v in e.items() if k != "account_id"}) for e in event_log.list_events(account_id, limit)]


@router.get("/jobs/{job_name}", dependencies=[Depends(verify_admin_key)])
def job_runs(job_name: str, limit: int = Query(20, ge=1, le=100)):
    return {"job_name": job_name, "runs": jobs.list_job_runs(job_name, limit)}
