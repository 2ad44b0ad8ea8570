"""
Tests for plan transitions (upgrade, downgrade, expiry).
"""
from datetime import datetime, timedelta, timezone

import pytest

from cvarchitect.core.errors import ValidationError
from cvarchitect.features.entitlements.manager import SubscriptionManager, create_default_subscription
from cvarchitect.features.plans.upgrade import (
    add_months,
    downgrade_to_free,
    is_expired,
    upgrade_plan,
)
from cvarchitect.models.pricing import BillingCycle, FeatureAction, PlanId


def test_free_to_pro_monthly(fixed_now):
    """Monthly cycle: end is one calendar month later, credits are the monthly grant."""
    sub = create_default_subscription("user_1", now=fixed_now)

    upgraded = upgrade_plan(sub, PlanId.PRO_MONTHLY, BillingCycle.MONTHLY, now=fixed_now)

    assert upgraded.plan_id == PlanId.PRO_MONTHLY
    assert upgraded.credits == 150
    assert upgraded.subscription_start == fixed_now
    # 2024-01-31 + 1 month clamps to the end of February (leap year)
    assert upgraded.subscription_end == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert upgraded.is_active is True
    assert upgraded.billing_cycle == BillingCycle.MONTHLY


def test_quarterly_default_cycle(fixed_now):
    upgraded = upgrade_plan(create_default_subscription("u"), "pro_quarterly", now=fixed_now)
    assert upgraded.billing_cycle == BillingCycle.QUARTERLY
    assert upgraded.credits == 300
    assert upgraded.subscription_end == datetime(2024, 4, 30, 12, 0, tzinfo=timezone.utc)


def test_yearly_cycle(fixed_now):
    upgraded = upgrade_plan(create_default_subscription("u"), "pro_monthly", "yearly", now=fixed_now)
    assert upgraded.subscription_end == datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)


def test_week_pass_is_fixed_term(fixed_now):
    upgraded = upgrade_plan(create_default_subscription("u"), PlanId.WEEK_PASS, now=fixed_now)
    assert upgraded.credits == 75
    assert upgraded.subscription_end == fixed_now + timedelta(days=7)


def test_lifetime_has_no_end(fixed_now):
    upgraded = upgrade_plan(create_default_subscription("u"), PlanId.LIFETIME, now=fixed_now)
    assert upgraded.billing_cycle == BillingCycle.LIFETIME
    assert upgraded.credits == 100
    assert upgraded.subscription_end is None


def test_upgrade_is_pure(fixed_now):
    sub = create_default_subscription("u", now=fixed_now)
    first = upgrade_plan(sub, PlanId.PRO_QUARTERLY, now=fixed_now)
    second = upgrade_plan(sub, PlanId.PRO_QUARTERLY, now=fixed_now)

    assert first == second
    assert sub.plan_id == PlanId.FREE
    assert sub.credits == 10


def test_upgrade_preserves_history(fixed_now):
    manager = SubscriptionManager(create_default_subscription("u", now=fixed_now))
    manager.deduct_credit(FeatureAction.AI_REWRITE, now=fixed_now)
    before = manager.get_subscription()

    upgraded = upgrade_plan(before, PlanId.LIFETIME, now=fixed_now)

    assert upgraded.usage_history == before.usage_history
    assert upgraded.usage_stats == before.usage_stats
    assert upgraded.version == before.version


def test_upgrade_resets_balance_rather_than_carrying_over(fixed_now):
    sub = create_default_subscription("u").model_copy(update={"credits": 3})
    assert upgrade_plan(sub, PlanId.WEEK_PASS, now=fixed_now).credits == 75


def test_unknown_plan_rejected():
    with pytest.raises(ValidationError):
        upgrade_plan(create_default_subscription("u"), "platinum")


def test_unknown_cycle_rejected():
    with pytest.raises(ValidationError):
        upgrade_plan(create_default_subscription("u"), "pro_monthly", "fortnightly")


def test_downgrade_to_free(fixed_now):
    paid = upgrade_plan(create_default_subscription("u"), PlanId.PRO_MONTHLY, now=fixed_now)
    paid = paid.model_copy(update={"membership_id": "mem_1", "provider_plan_id": "plan_x"})

    later = fixed_now + timedelta(days=3)
    free = downgrade_to_free(paid, now=later)

    assert free.plan_id == PlanId.FREE
    assert free.credits == 10
    assert free.is_active is False
    assert free.subscription_end == later
    assert free.membership_id is None
    assert free.provider_plan_id is None


def test_is_expired(fixed_now):
    week = upgrade_plan(create_default_subscription("u"), PlanId.WEEK_PASS, now=fixed_now)
    assert is_expired(week, fixed_now + timedelta(days=6)) is False
    assert is_expired(week, fixed_now + timedelta(days=8)) is True

    lifetime = upgrade_plan(create_default_subscription("u"), PlanId.LIFETIME, now=fixed_now)
    assert is_expired(lifetime, fixed_now + timedelta(days=3650)) is False


def test_add_months_clamps_day():
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2023, 11, 30), 3) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 5, 15), 12) == datetime(2024, 5, 15)
