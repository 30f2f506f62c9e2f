"""
Transactional lifecycle email via Resend.

Every sender returns True/False and logs failures; a notification problem
never rolls back or fails a lifecycle transition.
"""
from __future__ import annotations

import logging
from datetime import datetime
from html import escape
from typing import Optional

import httpx

from gallery_backend.core.config import settings
from gallery_backend.core.metrics import notifications_sent_total
from gallery_backend.models.lifecycle import AccountSnapshot


logger = logging.getLogger("gallery.notifications")


def _greeting(account: AccountSnapshot) -> str:
    return f"Hi {escape(account.display_name)}," if account.display_name else "Hi,"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "soon"


def send_email(to: Optional[str], subject: str, html: str, *, template: str) -> bool:
    if not to:
        notifications_sent_total.inc(labels={"template": template, "result": "no_recipient"})
        return False
    if not settings.RESEND_API_KEY:
        logger.info(f"[email] RESEND_API_KEY not set, skipping {template} email")
        notifications_sent_total.inc(labels={"template": template, "result": "disabled"})
        return False

    headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    payload = {
        "from": settings.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "html": html,
        "tags": [{"name": "category", "value": template}],
    }
    try:
        with httpx.Client(timeout=settings.OUTBOUND_TIMEOUT_SECONDS) as client:
            response = client.post(f"{settings.RESEND_API_BASE.rstrip('/')}/emails", headers=headers, json=payload)
    except httpx.HTTPError as exc:
        logger.warning(f"[email] {template} send failed: {exc}", extra={"error_code": "email_unreachable"})
        notifications_sent_total.inc(labels={"template": template, "result": "error"})
        return False

    if response.status_code >= 300:
        logger.warning(
            f"[email] {template} rejected: {response.status_code}",
            extra={"error_code": "email_rejected"},
        )
        notifications_sent_total.inc(labels={"template": template, "result": "rejected"})
        return False

    notifications_sent_total.inc(labels={"template": template, "result": "sent"})
    return True


def send_payment_failed_notice(account: AccountSnapshot) -> bool:
    billing_url = f"{settings.APP_BASE_URL.rstrip('/')}/settings/billing"
    html = (
        f"<p>{_greeting(account)}</p>"
        f"<p>We couldn't process the payment for your {escape(account.plan)} plan.</p>"
        f"<p>Your galleries stay fully available until {_date(account.grace_period_ends_at)}. "
        f"Update your payment method before then to keep your plan: "
        f"<a href=\"{billing_url}\">{billing_url}</a></p>"
    )
    return send_email(account.email, "Action needed: payment failed", html, template="payment_failed")


def send_downgrade_notice(
    account: AccountSnapshot,
    *,
    previous_plan: Optional[str],
    archived_count: int,
    deletion_date: Optional[datetime],
) -> bool:
    pricing_url = f"{settings.APP_BASE_URL.rstrip('/')}/pricing"
    archived_line = (
        f"<p>{archived_count} galleries above the free plan limit were archived. "
        f"They are not visible to clients but nothing has been deleted.</p>"
        if archived_count else ""
    )
    html = (
        f"<p>{_greeting(account)}</p>"
        f"<p>Your account moved from the {escape(previous_plan or 'paid')} plan to the free plan.</p>"
        f"{archived_line}"
        f"<p>Archived content will be permanently removed on {_date(deletion_date)} unless you resubscribe: "
        f"<a href=\"{pricing_url}\">{pricing_url}</a></p>"
    )
    return send_email(account.email, "Your plan has changed to Free", html, template="downgrade")


def send_deletion_warning(account: AccountSnapshot, *, scheduled_for: datetime) -> bool:
    pricing_url = f"{settings.APP_BASE_URL.rstrip('/')}/pricing"
    html = (
        f"<p>{_greeting(account)}</p>"
        f"<p>Your archived galleries are scheduled for permanent deletion on {_date(scheduled_for)}.</p>"
        f"<p>Resubscribe before then to restore them: <a href=\"{pricing_url}\">{pricing_url}</a></p>"
    )
    return send_email(account.email, "Your archived galleries will be deleted soon", html, template="deletion_warning")


def send_operator_cancellation_notice(
    account: AccountSnapshot,
    *,
    previous_plan: Optional[str],
    reason: str,
    archived_count: int,
) -> bool:
    """Tell the operator inbox an account fell back to the free plan."""
    if not settings.NOTIFY_ON_CANCELLATION:
        return False
    who = account.email or account.account_id
    html = (
        f"<p>An account has left the {escape(previous_plan or 'paid')} plan.</p>"
        f"<ul>"
        f"<li>Account: {escape(account.account_id)}</li>"
        f"<li>Email: {escape(account.email or 'unknown')}</li>"
        f"<li>Name: {escape(account.display_name or 'unknown')}</li>"
        f"<li>Reason: {escape(reason)}</li>"
        f"<li>Galleries archived: {archived_count}</li>"
        f"</ul>"
    )
    return send_email(
        settings.ADMIN_NOTIFICATION_EMAIL,
        f"Cancellation: {who} ({previous_plan or 'paid'})",
        html,
        template="operator_cancellation",
    )
