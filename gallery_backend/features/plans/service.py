"""
gallery_backend/features/plans/service.py

Plan catalog.

Handles:
- Plan tiers (free, basic, pro, studio) and their gallery limits
- Paid/unpaid classification used by the lifecycle engine
- Stripe price id -> plan tier mapping
"""

from typing import Optional, Dict

from gallery_backend.core.config import settings
from gallery_backend.core.errors import ValidationError
from gallery_backend.models.plan import Plan


FREE_PLAN_ID = "free"

# Default plan configurations
DEFAULT_PLANS = {
    "free": {"name": "Free", "gallery_limit": 3, "is_paid": False, "rank": 0},
    "basic": {"name": "Basic", "gallery_limit": 10, "is_paid": True, "rank": 1},
    "pro": {"name": "Pro", "gallery_limit": 50, "is_paid": True, "rank": 2},
    "studio": {"name": "Studio", "gallery_limit": None, "is_paid": True, "rank": 3},  # unlimited
}


def get_plan(plan_id: str) -> Plan:
    """Resolve a plan tier, raising ValidationError for unknown ids."""
    config = DEFAULT_PLANS.get(plan_id)
    if config is None:
        raise ValidationError(f"Unknown plan tier: {plan_id}")

    gallery_limit = config["gallery_limit"]
    if plan_id == FREE_PLAN_ID:
        gallery_limit = settings.FREE_PLAN_GALLERY_LIMIT

    return Plan(
        plan_id=plan_id,
        name=config["name"],
        gallery_limit=gallery_limit,
        is_paid=config["is_paid"],
        rank=config["rank"],
    )


def gallery_limit(plan_id: str) -> Optional[int]:
    """Gallery limit for a plan (None = unlimited)."""
    return get_plan(plan_id).gallery_limit


def is_paid(plan_id: Optional[str]) -> bool:
    if not plan_id or plan_id not in DEFAULT_PLANS:
        return False
    return DEFAULT_PLANS[plan_id]["is_paid"]


def paid_plan_ids() -> list:
    return [plan_id for plan_id, config in DEFAULT_PLANS.items() if config["is_paid"]]


def _price_map() -> Dict[Optional[str], str]:
    return {
        settings.STRIPE_PRICE_BASIC: "basic",
        settings.STRIPE_PRICE_PRO: "pro",
        settings.STRIPE_PRICE_STUDIO: "studio",
    }


def plan_for_price(price_id: Optional[str]) -> Optional[str]:
    """Map a Stripe price id to an internal plan tier."""
    if not price_id:
        return None
    return _price_map().get(price_id)
