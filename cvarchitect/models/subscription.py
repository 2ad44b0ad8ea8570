"""
cvarchitect/models/subscription.py

UserSubscription model: a user's plan, credit balance and usage ledger.

Records are frozen. Every change produces a new object, so a decision made
against one snapshot can never be invalidated by a concurrent in-place edit.
"""

from datetime import datetime
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from cvarchitect.models.pricing import BillingCycle, FeatureAction, LedgerAction, PlanId


class UsageRecord(BaseModel):
    """One ledger entry; write-once."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    action: Union[FeatureAction, LedgerAction]
    credits_cost: int = Field(ge=0)
    remaining_credits: int = Field(ge=0)


class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_actions: int = Field(default=0, ge=0)
    total_credits_used: int = Field(default=0, ge=0)


class UserSubscription(BaseModel):
    """
    UserSubscription represents a user's entitlement record.

    Constraint: credits never go negative (enforced on construction).
    usage_history is ordered newest first.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: PlanId
    credits: int = Field(ge=0)
    billing_cycle: Optional[BillingCycle] = None
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    is_active: bool = True
    usage_history: Tuple[UsageRecord, ...] = ()
    usage_stats: Optional[UsageStats] = None
    version: int = Field(default=0, ge=0)
    membership_id: Optional[str] = None
    provider_plan_id: Optional[str] = None
