"""
gallery_backend/models/plan.py

Plan tier model.

Plans represent capability tiers (free, basic, pro, studio) without pricing.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Plans do NOT include:
    - Pricing (no currency, no amounts)
    - Billing cycles (no monthly/annual)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    gallery_limit: Optional[int] = None  # None = unlimited
    is_paid: bool = True
    rank: int = 0
