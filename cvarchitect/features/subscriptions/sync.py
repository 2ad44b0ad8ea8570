"""
cvarchitect/features/subscriptions/sync.py

Optimistic local entitlement decisions reconciled with the server ledger.

Handles:
- Gated actions: local deduction first, then the remote ledger
- Plan changes: local upgrade first, then persistence
- Snapshot reconciliation by server version

Remote failures are non-fatal: the optimistic local state stands and the
caller gets a warning to surface. The next fetch reconciles.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
import logging

from cvarchitect.features.entitlements.manager import GUEST_USER_ID, SubscriptionManager, parse_action
from cvarchitect.features.plans.upgrade import downgrade_to_free, is_expired, upgrade_plan
from cvarchitect.features.subscriptions import service as ledger
from cvarchitect.models.pricing import BillingCycle, FeatureAction, PlanId
from cvarchitect.models.subscription import UserSubscription


logger = logging.getLogger(__name__)

PAYWALL_CREDITS = "credits"
SYNC_FAILED_WARNING = "Action completed, but your credit balance could not be saved to your account."
PLAN_SAVE_FAILED_WARNING = "Plan upgraded locally, but failed to save to account."
REMOTE_INSUFFICIENT_REASON = "Insufficient credits on your account."


@dataclass(frozen=True)
class GatedActionOutcome:
    allowed: bool
    action: FeatureAction
    cost: int
    credits: int
    reason: Optional[str] = None
    paywall: Optional[str] = None
    warning: Optional[str] = None
    synced: bool = False


@dataclass(frozen=True)
class PlanChangeOutcome:
    subscription: UserSubscription
    warning: Optional[str] = None
    synced: bool = False


def _is_signed_in(user_id: Optional[str]) -> bool:
    return bool(user_id) and user_id != GUEST_USER_ID


def _with_server_balance(subscription: UserSubscription, remote: ledger.LedgerResult) -> UserSubscription:
    """Adopt the server balance and version; the newest record carries the same balance."""
    history = subscription.usage_history
    if history:
        latest = history[0].model_copy(update={"remaining_credits": remote.new_credits})
        history = (latest,) + history[1:]
    return subscription.model_copy(
        update={"credits": remote.new_credits, "version": remote.version, "usage_history": history}
    )


def reconcile(local: UserSubscription, remote: UserSubscription) -> UserSubscription:
    """
    Pick the authoritative snapshot.

    The server wins unless its snapshot is older than what we already hold
    (a stale response overtaken by a later confirmed write).
    """
    if remote.version >= local.version:
        return remote
    logger.info(
        "[sync] stale remote snapshot ignored",
        extra={"user_id": local.user_id, "local_version": local.version, "remote_version": remote.version},
    )
    return local


def load_manager(user_id: str, now: Optional[datetime] = None) -> SubscriptionManager:
    """
    Build a manager from the server record, expiring lapsed paid terms first.

    Expiry is applied lazily on read: a paid subscription past its end date
    is downgraded to free and persisted before any decision is made.
    """
    subscription = ledger.get_or_create_subscription(user_id, now=now)
    if subscription.plan_id != PlanId.FREE and is_expired(subscription, now):
        logger.info(
            "[subscription] term ended, downgrading",
            extra={"user_id": user_id, "plan_id": subscription.plan_id.value},
        )
        subscription = ledger.save_subscription(downgrade_to_free(subscription, now=now))
    return SubscriptionManager(subscription)


def refresh_from_server(manager: SubscriptionManager, user_id: str) -> UserSubscription:
    """Fetch the server record and adopt it per reconcile()."""
    remote = ledger.get_or_create_subscription(user_id)
    merged = reconcile(manager.get_subscription(), remote)
    manager.replace(merged)
    return merged


def run_gated_action(
    manager: SubscriptionManager,
    action: Union[FeatureAction, str],
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GatedActionOutcome:
    """
    Run the credit side of a gated action.

    Args:
        manager: Holder of the user's local subscription
        action: Gated action being performed
        user_id: Signed-in user; None or "guest" keeps everything local
        now: Timestamp for the ledger record

    Returns:
        GatedActionOutcome. A denial carries paywall="credits" and no remote
        call is made. A remote failure keeps the optimistic result and sets warning.
    """
    action = parse_action(action)
    before = manager.get_subscription()
    local = manager.deduct_credit(action, now=now)
    if not local.success:
        return GatedActionOutcome(
            allowed=False,
            action=action,
            cost=local.cost,
            credits=local.remaining_credits,
            reason=local.reason,
            paywall=PAYWALL_CREDITS,
        )

    if not _is_signed_in(user_id):
        return GatedActionOutcome(allowed=True, action=action, cost=local.cost, credits=local.remaining_credits)

    # Zero-cost actions are logged too so usage and quotas are tracked
    try:
        remote = ledger.perform_action(user_id, action, local.cost, now=now)
    except Exception as e:
        logger.warning(
            "[sync] remote deduction failed, keeping optimistic balance",
            extra={"user_id": user_id, "action": action.value, "cost": local.cost, "error": str(e)},
        )
        return GatedActionOutcome(
            allowed=True,
            action=action,
            cost=local.cost,
            credits=local.remaining_credits,
            warning=SYNC_FAILED_WARNING,
        )

    if not remote.success:
        # Drop the local record of the refused action; only the balance comes from the server
        if remote.version >= before.version:
            before = before.model_copy(update={"credits": remote.new_credits, "version": remote.version})
        manager.replace(before)
        logger.info(
            "[sync] server refused deduction",
            extra={"user_id": user_id, "action": action.value, "cost": local.cost, "server_credits": remote.new_credits},
        )
        return GatedActionOutcome(
            allowed=False,
            action=action,
            cost=local.cost,
            credits=manager.get_credit_balance(),
            reason=REMOTE_INSUFFICIENT_REASON,
            paywall=PAYWALL_CREDITS,
            synced=True,
        )

    current = manager.get_subscription()
    if remote.version >= current.version:
        manager.replace(_with_server_balance(current, remote))

    return GatedActionOutcome(
        allowed=True,
        action=action,
        cost=local.cost,
        credits=manager.get_credit_balance(),
        synced=True,
    )


def change_plan(
    manager: SubscriptionManager,
    plan_id: Union[PlanId, str],
    billing_cycle: Optional[Union[BillingCycle, str]] = None,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PlanChangeOutcome:
    """Upgrade locally, then persist for signed-in users. A failed save does not roll back."""
    upgraded = upgrade_plan(manager.get_subscription(), plan_id, billing_cycle, now=now)
    manager.replace(upgraded)

    if not _is_signed_in(user_id):
        return PlanChangeOutcome(subscription=upgraded)

    try:
        saved = ledger.save_subscription(upgraded.model_copy(update={"user_id": user_id}))
    except Exception as e:
        logger.warning(
            "[sync] plan save failed",
            extra={"user_id": user_id, "plan_id": upgraded.plan_id.value, "error": str(e)},
        )
        return PlanChangeOutcome(subscription=upgraded, warning=PLAN_SAVE_FAILED_WARNING)

    manager.replace(saved)
    return PlanChangeOutcome(subscription=saved, synced=True)
