"""
Scheduled job triggers.

Called by the platform scheduler with `Authorization: Bearer <CRON_SECRET>`.
Both jobs are safe to trigger concurrently from several instances.
"""

import logging
import secrets
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from gallery_backend.core.config import settings
from gallery_backend.features.lifecycle import orchestrator


logger = logging.getLogger("gallery.cron")

router = APIRouter(prefix="/v1/cron", tags=["cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    expected = settings.CRON_SECRET
    provided = (authorization or "").removeprefix("Bearer ").strip()
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        logger.warning("[cron] rejected trigger with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/subscription-grace", dependencies=[Depends(verify_cron_secret)])
def run_subscription_grace():
    """Downgrade accounts whose grace period has expired."""
    start = time.perf_counter()
    stats = orchestrator.run_grace_period_sweep()
    return {
        "success": not stats["errors"],
        "duration_ms": round((time.perf_counter() - start) * 1000, 1),
        **stats,
    }


@router.post("/deletion-warnings", dependencies=[Depends(verify_cron_secret)])
def run_deletion_warnings(lead_days: Optional[int] = Query(None, ge=0)):
    """Email warnings for deletions coming due and mark them sent."""
    start = time.perf_counter()
    stats = orchestrator.run_deletion_warning_scan(lead_days)
    return {
        "success": not stats["errors"],
        "duration_ms": round((time.perf_counter() - start) * 1000, 1),
        **stats,
    }
