"""
Billing webhook service.

Verifies provider webhooks and dispatches them to the lifecycle
orchestrator. The provider event id is the correlation id, so a redelivered
webhook replays instead of re-applying.

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from typing import Optional, Dict, Any

from gallery_backend.core.config import settings
from gallery_backend.core.metrics import billing_webhooks_total
from gallery_backend.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookEvent,
)
from gallery_backend.features.billing.stripe_provider import StripeProvider
from gallery_backend.features.lifecycle import orchestrator


logger = logging.getLogger("gallery.billing")

PAYMENT_FAILED_EVENTS = {"invoice.payment_failed"}
PAYMENT_RECOVERED_EVENTS = {"invoice.payment_succeeded", "invoice.paid"}
CANCELED_EVENTS = {"customer.subscription.deleted"}
RESUMED_EVENTS = {"checkout.session.completed", "customer.subscription.created"}


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def dispatch_event(event: BillingWebhookEvent) -> Dict[str, Any]:
    """Route a normalised billing event to its lifecycle entry point.

    Unhandled types are acknowledged so the provider stops redelivering them.
    NotFoundError, ValidationError and PartialCascadeFailureError propagate.
    """
    event_type = event.event_type
    handled = event_type in PAYMENT_FAILED_EVENTS | PAYMENT_RECOVERED_EVENTS | CANCELED_EVENTS | RESUMED_EVENTS
    if not handled:
        billing_webhooks_total.inc(labels={"event_type": event_type, "result": "unhandled"})
        return {"received": True, "handled": False, "event_id": event.event_id, "event_type": event_type}

    if not event.customer_ref:
        logger.warning(f"[billing] {event_type} {event.event_id} carries no customer reference")
        billing_webhooks_total.inc(labels={"event_type": event_type, "result": "no_customer"})
        return {"received": True, "handled": False, "event_id": event.event_id, "reason": "missing customer"}

    if event_type in PAYMENT_FAILED_EVENTS:
        outcome = orchestrator.on_payment_failed(event.customer_ref, event.event_id)
    elif event_type in PAYMENT_RECOVERED_EVENTS:
        outcome = orchestrator.on_payment_recovered(event.customer_ref, event.event_id)
    elif event_type in CANCELED_EVENTS:
        outcome = orchestrator.on_subscription_canceled(
            event.customer_ref, event.event_id, keep_gallery_ids=event.keep_gallery_ids
        )
    else:
        if not event.plan_id:
            logger.warning(f"[billing] {event_type} {event.event_id} has no resolvable plan")
            billing_webhooks_total.inc(labels={"event_type": event_type, "result": "no_plan"})
            return {"received": True, "handled": False, "event_id": event.event_id, "reason": "missing plan"}
        outcome = orchestrator.on_subscription_resumed(
            event.customer_ref,
            event.event_id,
            event.plan_id,
            stripe_customer_id=event.provider_customer_id,
        )

    result = "replayed" if outcome.already_processed else "ignored" if outcome.ignored else "applied"
    billing_webhooks_total.inc(labels={"event_type": event_type, "result": result})
    return {
        "received": True,
        "handled": True,
        "event_id": event.event_id,
        "event_type": event_type,
        "outcome": outcome.to_dict(),
    }


def process_webhook_event(headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
    """
    Verify and dispatch a billing webhook.

    Raises:
        BillingProviderError: billing disabled
        BillingWebhookError: signature invalid or payload malformed
    """
    provider = get_provider()
    if not provider:
        raise BillingProviderError("Billing not enabled")

    event = provider.handle_webhook(headers, body)
    logger.info(f"[billing] webhook {event.event_type} {event.event_id}", extra={"correlation_id": event.event_id})
    return dispatch_event(event)
