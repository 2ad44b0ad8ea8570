"""
cvarchitect/features/plans/upgrade.py

Plan transitions for a subscription.

Handles:
- Upgrades with per-plan credit grants and term dates
- Downgrade to free on membership deactivation
- Expiry checks

All functions are pure: they return new records and never touch their input.
"""

import calendar
from datetime import datetime, timedelta
from typing import Optional, Union

from cvarchitect.core.clock import normalize_now
from cvarchitect.core.errors import ValidationError
from cvarchitect.features.pricing import catalog
from cvarchitect.models.pricing import BillingCycle, Plan, PlanId
from cvarchitect.models.subscription import UserSubscription


_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition; the day is clamped to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_billing_cycle(value: Union[BillingCycle, str]) -> BillingCycle:
    try:
        return BillingCycle(value)
    except ValueError:
        raise ValidationError(f"Unknown billing cycle: {value}")


def credit_grant(plan: Plan, billing_cycle: BillingCycle) -> int:
    """Credits a subscription starts with after moving to `plan`."""
    rules = plan.credit_rules
    if billing_cycle == BillingCycle.LIFETIME and rules.lifetime_credits is not None:
        return rules.lifetime_credits
    if billing_cycle != BillingCycle.LIFETIME and rules.monthly_credits is not None:
        return rules.monthly_credits
    return rules.starting_credits


def subscription_end_for(plan: Plan, billing_cycle: BillingCycle, start: datetime) -> Optional[datetime]:
    if plan.fixed_term_days is not None:
        return start + timedelta(days=plan.fixed_term_days)
    if billing_cycle == BillingCycle.LIFETIME:
        return None
    return add_months(start, _CYCLE_MONTHS[billing_cycle])


def upgrade_plan(
    subscription: UserSubscription,
    plan_id: Union[PlanId, str],
    billing_cycle: Optional[Union[BillingCycle, str]] = None,
    now: Optional[datetime] = None,
) -> UserSubscription:
    """
    Move a subscription to a new plan.

    Args:
        subscription: Current record (not modified)
        plan_id: Target plan
        billing_cycle: Explicit cycle, else the plan's default
        now: Start of the new term (defaults to current UTC time)

    Returns:
        New subscription with the target plan's credit grant and term dates.
        Usage history, stats, version and provider linkage carry over.

    Raises:
        ValidationError: if plan_id or billing_cycle is unknown
    """
    plan = catalog.get_plan(catalog.parse_plan_id(plan_id))
    cycle = parse_billing_cycle(billing_cycle) if billing_cycle is not None else plan.default_billing_cycle
    start = normalize_now(now)

    return subscription.model_copy(
        update={
            "plan_id": plan.id,
            "credits": credit_grant(plan, cycle),
            "billing_cycle": cycle,
            "subscription_start": start,
            "subscription_end": subscription_end_for(plan, cycle, start),
            "is_active": True,
        }
    )


def downgrade_to_free(subscription: UserSubscription, now: Optional[datetime] = None) -> UserSubscription:
    """End a paid membership: free plan grant, inactive, provider linkage cleared."""
    free = catalog.get_plan(PlanId.FREE)
    ended = normalize_now(now)
    return subscription.model_copy(
        update={
            "plan_id": PlanId.FREE,
            "credits": free.credit_rules.starting_credits,
            "billing_cycle": free.default_billing_cycle,
            "subscription_end": ended,
            "is_active": False,
            "membership_id": None,
            "provider_plan_id": None,
        }
    )


def is_expired(subscription: UserSubscription, now: Optional[datetime] = None) -> bool:
    end = subscription.subscription_end
    if end is None:
        return False
    return normalize_now(end) < normalize_now(now)
