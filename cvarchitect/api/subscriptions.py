"""
Subscription API routes.

- GET  /api/subscription: Current subscription (created on first call)
- GET  /api/subscription/features/{action}: Can the user perform an action?
- POST /api/subscription/actions: Spend credits on a gated action
- POST /api/subscription/upgrade: Change plan directly (non-production only)

An entitlement denial is a normal 200 response with allowed=false and a
paywall hint, not an error status.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from cvarchitect.api.deps import UserId
from cvarchitect.core.config import settings
from cvarchitect.core.errors import ForbiddenError
from cvarchitect.features.entitlements.manager import parse_action
from cvarchitect.features.plans.upgrade import is_expired
from cvarchitect.features.pricing.catalog import is_pro
from cvarchitect.features.subscriptions import sync
from cvarchitect.models.pricing import FeatureAction, FeatureLimit
from cvarchitect.models.subscription import UserSubscription


router = APIRouter(prefix="/subscription", tags=["subscription"])


class SubscriptionResponse(BaseModel):
    subscription: UserSubscription
    is_pro: bool
    is_expired: bool


class QuotaView(BaseModel):
    limit: Optional[FeatureLimit] = None
    used: int
    remaining: Optional[FeatureLimit] = None


class FeatureCheckResponse(BaseModel):
    action: FeatureAction
    allowed: bool
    cost: int
    credits: int
    reason: Optional[str] = None
    quota: QuotaView


class ActionRequest(BaseModel):
    action: str


class ActionResponse(BaseModel):
    action: FeatureAction
    allowed: bool
    cost: int
    credits: int
    version: int
    reason: Optional[str] = None
    paywall: Optional[str] = None
    warning: Optional[str] = None


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: Optional[str] = None


class UpgradeResponse(BaseModel):
    subscription: UserSubscription
    warning: Optional[str] = None


def _subscription_view(subscription: UserSubscription, now: Optional[datetime] = None) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription=subscription,
        is_pro=is_pro(subscription.plan_id),
        is_expired=is_expired(subscription, now),
    )


@router.get("", response_model=SubscriptionResponse)
def get_subscription(user_id: UserId):
    manager = sync.load_manager(user_id)
    return _subscription_view(manager.get_subscription())


@router.get("/features/{action}", response_model=FeatureCheckResponse)
def check_feature(action: str, user_id: UserId):
    parsed = parse_action(action)
    manager = sync.load_manager(user_id)
    check = manager.can_use_feature(parsed)
    quota = manager.feature_quota(parsed)
    return FeatureCheckResponse(
        action=parsed,
        allowed=check.allowed,
        cost=check.cost,
        credits=manager.get_credit_balance(),
        reason=check.reason,
        quota=QuotaView(limit=quota.limit, used=quota.used, remaining=quota.remaining),
    )


@router.post("/actions", response_model=ActionResponse)
def perform_action(request: ActionRequest, user_id: UserId):
    parsed = parse_action(request.action)
    manager = sync.load_manager(user_id)
    outcome = sync.run_gated_action(manager, parsed, user_id=user_id)
    return ActionResponse(
        action=outcome.action,
        allowed=outcome.allowed,
        cost=outcome.cost,
        credits=outcome.credits,
        version=manager.get_subscription().version,
        reason=outcome.reason,
        paywall=outcome.paywall,
        warning=outcome.warning,
    )


@router.post("/upgrade", response_model=UpgradeResponse)
def upgrade(request: UpgradeRequest, user_id: UserId):
    """
    Change plan without payment.

    Production upgrades arrive through license activation or provider
    webhooks; this route exists for development and support tooling.
    """
    if settings.ENV.lower() == "production":
        raise ForbiddenError("Direct plan changes are disabled; activate a license instead")
    manager = sync.load_manager(user_id)
    outcome = sync.change_plan(manager, request.plan_id, request.billing_cycle, user_id=user_id)
    return UpgradeResponse(subscription=outcome.subscription, warning=outcome.warning)
