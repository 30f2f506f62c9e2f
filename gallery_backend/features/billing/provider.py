"""
Billing provider protocol.

Only the inbound half of billing matters to the lifecycle engine: verify a
webhook and normalise it into a BillingWebhookEvent. Checkout, invoicing and
payment collection stay with the provider.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field


@dataclass
class BillingWebhookEvent:
    """Provider event normalised for lifecycle dispatch."""
    event_id: str
    event_type: str
    customer_ref: Optional[str]
    plan_id: Optional[str] = None
    # Provider-side customer id, linked to the account on resubscription
    provider_customer_id: Optional[str] = None
    keep_gallery_ids: Optional[List[str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations verify the webhook signature against the raw body and
    return a normalised event.
    """

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
