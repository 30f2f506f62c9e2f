"""
Identity directory push.

Mirrors plan and subscription status into the Clerk user's public metadata
so the frontend can gate features without a backend round-trip. Best
effort: the lifecycle store is the source of truth and a failed push is
logged, never raised.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import httpx

from gallery_backend.core.config import settings
from gallery_backend.models.lifecycle import AccountSnapshot


logger = logging.getLogger("gallery.identity")


def build_public_metadata(account: AccountSnapshot) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "plan": account.plan,
        "subscriptionStatus": account.subscription_status,
        "previousPlan": account.previous_plan,
        "lifecycleSyncedAt": datetime.now(timezone.utc).isoformat(),
    }
    if account.grace_period_ends_at is not None:
        metadata["gracePeriodEndsAt"] = account.grace_period_ends_at.isoformat()
    return metadata


def push_account_state(account: AccountSnapshot) -> bool:
    """PATCH the account's public metadata. Returns True when Clerk accepted it."""
    if not settings.CLERK_SECRET_KEY:
        logger.debug("[identity] CLERK_SECRET_KEY not set, skipping push", extra={"account_id": account.account_id})
        return False

    headers = {
        "Authorization": f"Bearer {settings.CLERK_SECRET_KEY}",
        "Content-Type": "application/json",
    }
    url = f"{settings.CLERK_API_BASE.rstrip('/')}/users/{account.account_id}"
    payload = {"public_metadata": build_public_metadata(account)}

    try:
        with httpx.Client(timeout=settings.OUTBOUND_TIMEOUT_SECONDS) as client:
            response = client.patch(url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        logger.warning(
            f"[identity] directory push failed: {exc}",
            extra={"account_id": account.account_id, "error_code": "directory_unreachable"},
        )
        return False

    if response.status_code >= 300:
        logger.warning(
            f"[identity] directory push rejected: {response.status_code}",
            extra={"account_id": account.account_id, "error_code": "directory_rejected"},
        )
        return False
    return True
