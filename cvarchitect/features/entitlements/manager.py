"""
cvarchitect/features/entitlements/manager.py

In-memory entitlement manager for one user's subscription.

Handles:
- Feature checks (unlimited plan features bypass the balance)
- The single local credit decrement path, with one ledger record per action
- Credit grants and monthly refills
- Read-only quota reporting for the usage dashboard

The held subscription is replaced, never mutated, on every change. Decisions
here are advisory; the server ledger is authoritative.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
import logging

from cvarchitect.core.clock import normalize_now
from cvarchitect.core.errors import ValidationError
from cvarchitect.features.pricing import catalog
from cvarchitect.models.pricing import (
    UNLIMITED,
    FeatureAction,
    FeatureLimit,
    LedgerAction,
    Plan,
    PlanId,
)
from cvarchitect.models.subscription import UsageRecord, UsageStats, UserSubscription


logger = logging.getLogger(__name__)

GUEST_USER_ID = "guest"


@dataclass(frozen=True)
class FeatureCheck:
    allowed: bool
    cost: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    remaining_credits: int
    cost: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class FeatureQuota:
    action: FeatureAction
    limit: Optional[FeatureLimit]
    used: int
    remaining: Optional[FeatureLimit]


def parse_action(action: Union[FeatureAction, str]) -> FeatureAction:
    """
    Strictly parse a gated action.

    Raises:
        ValidationError: if the value is not a known action
    """
    if isinstance(action, FeatureAction):
        return action
    try:
        return FeatureAction(action)
    except ValueError:
        raise ValidationError(f"Unknown action: {action}")


def create_default_subscription(user_id: str = GUEST_USER_ID, now: Optional[datetime] = None) -> UserSubscription:
    """Fresh free-plan subscription with the free plan's starting credits."""
    free = catalog.get_plan(PlanId.FREE)
    return UserSubscription(
        user_id=user_id,
        plan_id=PlanId.FREE,
        credits=free.credit_rules.starting_credits,
        billing_cycle=free.default_billing_cycle,
        subscription_start=normalize_now(now),
        is_active=True,
        usage_stats=UsageStats(),
        version=0,
    )


def _record(
    subscription: UserSubscription,
    action: Union[FeatureAction, LedgerAction],
    cost: int,
    credits: int,
    now: datetime,
) -> UserSubscription:
    """Return a copy with a new balance and one ledger record prepended."""
    record = UsageRecord(
        timestamp=now,
        action=action,
        credits_cost=cost,
        remaining_credits=credits,
    )
    stats = subscription.usage_stats or UsageStats()
    if isinstance(action, FeatureAction):
        stats = UsageStats(
            total_actions=stats.total_actions + 1,
            total_credits_used=stats.total_credits_used + cost,
        )
    return subscription.model_copy(
        update={
            "credits": credits,
            "usage_history": (record,) + subscription.usage_history,
            "usage_stats": stats,
        }
    )


class SubscriptionManager:
    """Holds one user's subscription and applies entitlement rules to it."""

    def __init__(self, subscription: Optional[UserSubscription] = None):
        self._subscription = subscription or create_default_subscription()

    @property
    def plan(self) -> Plan:
        return catalog.get_plan(self._subscription.plan_id)

    def can_use_feature(self, action: Union[FeatureAction, str]) -> FeatureCheck:
        """
        Decide whether `action` is allowed right now.

        Unlimited plan features are allowed at zero cost regardless of balance.
        Everything else is allowed iff the balance covers the action's cost.
        """
        action = parse_action(action)
        plan = self.plan
        if catalog.is_unlimited(plan, action):
            return FeatureCheck(allowed=True, cost=0)

        cost = catalog.credit_cost(plan, action)
        balance = self._subscription.credits
        if balance >= cost:
            return FeatureCheck(allowed=True, cost=cost)

        return FeatureCheck(
            allowed=False,
            cost=cost,
            reason=f"Insufficient credits: {action.value} costs {cost}, balance is {balance}.",
        )

    def deduct_credit(self, action: Union[FeatureAction, str], now: Optional[datetime] = None) -> DeductionResult:
        """
        Charge one use of `action` against the held subscription.

        On denial nothing changes. On success exactly one usage record is
        prepended whose remaining_credits is the new balance.
        """
        action = parse_action(action)
        check = self.can_use_feature(action)
        if not check.allowed:
            logger.info(
                "[entitlement] DENIED",
                extra={
                    "user_id": self._subscription.user_id,
                    "plan_id": self._subscription.plan_id.value,
                    "action": action.value,
                    "cost": check.cost,
                    "credits": self._subscription.credits,
                },
            )
            return DeductionResult(
                success=False,
                remaining_credits=self._subscription.credits,
                cost=check.cost,
                reason=check.reason,
            )

        remaining = self._subscription.credits - check.cost
        self._subscription = _record(self._subscription, action, check.cost, remaining, normalize_now(now))
        return DeductionResult(success=True, remaining_credits=remaining, cost=check.cost)

    def add_credits(
        self,
        amount: int,
        action: LedgerAction = LedgerAction.CREDIT_PURCHASE,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Grant credits (pack purchase). Returns the new balance.

        Raises:
            ValidationError: if amount is not positive
        """
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")
        credits = self._subscription.credits + amount
        self._subscription = _record(self._subscription, action, 0, credits, normalize_now(now))
        return credits

    def reset_monthly_credits(self, now: Optional[datetime] = None) -> int:
        """Refill to the plan's monthly grant when the plan resets credits."""
        rules = self.plan.credit_rules
        if not rules.credits_reset or rules.monthly_credits is None:
            return self._subscription.credits
        self._subscription = _record(
            self._subscription,
            LedgerAction.CREDIT_RESET,
            0,
            rules.monthly_credits,
            normalize_now(now),
        )
        return rules.monthly_credits

    def feature_quota(self, action: Union[FeatureAction, str]) -> FeatureQuota:
        """Report the plan limit for `action` and how often it was used."""
        action = parse_action(action)
        limit = catalog.feature_limit(self.plan, action)
        used = sum(1 for r in self._subscription.usage_history if r.action == action)
        if limit is None or limit == UNLIMITED:
            remaining = limit
        else:
            remaining = max(limit - used, 0)
        return FeatureQuota(action=action, limit=limit, used=used, remaining=remaining)

    def can_access_template(self, template_id: str) -> bool:
        return catalog.can_access_template(self._subscription.plan_id, template_id)

    def get_credit_balance(self) -> int:
        return self._subscription.credits

    def get_subscription(self) -> UserSubscription:
        return self._subscription

    def get_user_plan(self) -> Plan:
        return self.plan

    def is_pro(self) -> bool:
        return catalog.is_pro(self._subscription.plan_id)

    def replace(self, subscription: UserSubscription) -> None:
        """Adopt an externally reconciled subscription."""
        self._subscription = subscription
