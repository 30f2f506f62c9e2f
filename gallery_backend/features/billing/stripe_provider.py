"""
Stripe billing provider.

Verifies webhook signatures with the Stripe SDK and maps invoice,
subscription and checkout events onto BillingWebhookEvent.
"""
import json
from typing import Dict, Any, List, Optional

import stripe

from gallery_backend.core.config import settings
from gallery_backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
)
from gallery_backend.features.plans.service import plan_for_price


# Events that may carry our own account id (client_reference_id on checkout,
# metadata.account_id on subscriptions created from it)
ACCOUNT_REFERENCED_EVENTS = {"checkout.session.completed", "customer.subscription.created"}


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Parse the verified body as plain JSON rather than the SDK object
        return self._parse_event(json.loads(body))

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookEvent:
        """Parse Stripe event into normalized BillingWebhookEvent."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})

        customer_id = data.get("customer")
        customer_ref = customer_id
        if event_type in ACCOUNT_REFERENCED_EVENTS:
            # A first checkout names a customer id no account carries yet;
            # the explicit account reference wins and the id gets linked
            customer_ref = data.get("client_reference_id") or metadata.get("account_id") or customer_id

        plan_id = metadata.get("plan_id") or plan_for_price(self._first_price_id(event_type, data))

        return BillingWebhookEvent(
            event_id=event["id"],
            event_type=event_type,
            customer_ref=customer_ref,
            plan_id=plan_id,
            provider_customer_id=customer_id,
            keep_gallery_ids=self._keep_list(metadata),
            metadata=metadata,
        )

    @staticmethod
    def _first_price_id(event_type: str, data: Dict[str, Any]) -> Optional[str]:
        if event_type.startswith("customer.subscription"):
            items = (data.get("items") or {}).get("data") or []
        elif event_type.startswith("invoice."):
            items = (data.get("lines") or {}).get("data") or []
        else:
            return None
        if not items:
            return None
        return (items[0].get("price") or {}).get("id")

    @staticmethod
    def _keep_list(metadata: Dict[str, Any]) -> Optional[List[str]]:
        """Owner-selected galleries to keep, stored comma-separated on the subscription."""
        raw = metadata.get("keep_gallery_ids")
        if not raw:
            return None
        return [gid.strip() for gid in str(raw).split(",") if gid.strip()]
