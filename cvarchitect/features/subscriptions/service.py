"""
cvarchitect/features/subscriptions/service.py

Server-side subscription ledger.

Handles:
- Subscription reads with newest-first usage history
- Default subscription creation on first sign-in
- Atomic credit deduction (no double spend under concurrency)
- Plan persistence and credit grants
- Lookup by payment-provider membership

Every write bumps the row's version so clients can tell fresh snapshots from stale ones.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.exc import IntegrityError

from cvarchitect.core.clock import normalize_now
from cvarchitect.core.config import settings
from cvarchitect.core.database import get_db_session, subscriptions, usage_logs
from cvarchitect.core.errors import NotFoundError, ValidationError
from cvarchitect.features.entitlements.manager import create_default_subscription, parse_action
from cvarchitect.models.pricing import FeatureAction, LedgerAction
from cvarchitect.models.subscription import UsageRecord, UsageStats, UserSubscription


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    new_credits: int
    version: int


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    return normalize_now(value)


def _parse_ledger_action(value: str) -> Optional[Union[FeatureAction, LedgerAction]]:
    for enum_cls in (FeatureAction, LedgerAction):
        try:
            return enum_cls(value)
        except ValueError:
            continue
    return None


def _load_history(session, user_id: str, limit: int) -> List[UsageRecord]:
    rows = session.execute(
        select(usage_logs)
        .where(usage_logs.c.user_id == user_id)
        .order_by(usage_logs.c.occurred_at.desc(), usage_logs.c.id.desc())
        .limit(limit)
    ).all()

    history = []
    for row in rows:
        action = _parse_ledger_action(row.action)
        if action is None:
            logger.warning("[subscription] skipping usage log with unknown action", extra={"user_id": user_id, "action": row.action})
            continue
        history.append(
            UsageRecord(
                timestamp=_as_utc(row.occurred_at),
                action=action,
                credits_cost=row.credits_used,
                remaining_credits=row.remaining_credits,
            )
        )
    return history


def _load_stats(session, user_id: str) -> UsageStats:
    feature_actions = [a.value for a in FeatureAction]
    row = session.execute(
        select(
            func.count(usage_logs.c.id).label("total_actions"),
            func.coalesce(func.sum(usage_logs.c.credits_used), 0).label("total_credits_used"),
        )
        .where(usage_logs.c.user_id == user_id)
        .where(usage_logs.c.action.in_(feature_actions))
    ).one()
    return UsageStats(total_actions=row.total_actions, total_credits_used=row.total_credits_used)


def _insert_log(session, user_id: str, action: Union[FeatureAction, LedgerAction], cost: int, remaining: int, now: datetime, metadata: Optional[Dict[str, Any]] = None) -> None:
    session.execute(
        insert(usage_logs).values(
            user_id=user_id,
            action=action.value,
            credits_used=cost,
            remaining_credits=remaining,
            occurred_at=now,
            metadata=metadata,
        )
    )


def _plan_values(subscription: UserSubscription) -> Dict[str, Any]:
    return {
        "plan_id": subscription.plan_id.value,
        "billing_cycle": subscription.billing_cycle.value if subscription.billing_cycle else "monthly",
        "credits": subscription.credits,
        "start_date": normalize_now(subscription.subscription_start),
        "end_date": _as_utc(subscription.subscription_end),
        "is_active": subscription.is_active,
        "membership_id": subscription.membership_id,
        "provider_plan_id": subscription.provider_plan_id,
    }


def get_subscription(user_id: str, history_limit: Optional[int] = None) -> Optional[UserSubscription]:
    """
    Read a user's subscription with usage history (newest first).

    Args:
        user_id: User to read
        history_limit: Max usage records returned (defaults to USAGE_HISTORY_LIMIT)

    Returns:
        The subscription, or None when the user has none or the stored row is malformed
    """
    limit = history_limit if history_limit is not None else settings.USAGE_HISTORY_LIMIT
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).first()
        if row is None:
            return None

        history = _load_history(session, user_id, limit)
        stats = _load_stats(session, user_id)

    try:
        return UserSubscription(
            user_id=row.user_id,
            plan_id=row.plan_id,
            credits=row.credits,
            billing_cycle=row.billing_cycle,
            subscription_start=_as_utc(row.start_date),
            subscription_end=_as_utc(row.end_date),
            is_active=row.is_active,
            usage_history=tuple(history),
            usage_stats=stats,
            version=row.version,
            membership_id=row.membership_id,
            provider_plan_id=row.provider_plan_id,
        )
    except PydanticValidationError as e:
        logger.warning(
            "[subscription] malformed row skipped",
            extra={"user_id": user_id, "plan_id": row.plan_id, "error_count": e.error_count()},
        )
        return None


def save_subscription(subscription: UserSubscription) -> UserSubscription:
    """
    Persist plan fields and balance (insert or update). Bumps version.

    Returns:
        The subscription carrying the stored version
    """
    values = _plan_values(subscription)
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == subscription.user_id)
            .values(**values, version=subscriptions.c.version + 1)
        )
        if result.rowcount == 0:
            session.execute(
                insert(subscriptions).values(
                    user_id=subscription.user_id,
                    version=subscription.version + 1,
                    **values,
                )
            )
        version = session.execute(
            select(subscriptions.c.version).where(subscriptions.c.user_id == subscription.user_id)
        ).scalar_one()

    logger.info(
        "[subscription] saved",
        extra={"user_id": subscription.user_id, "plan_id": subscription.plan_id.value, "version": version},
    )
    return subscription.model_copy(update={"version": version})


def get_or_create_subscription(user_id: str, now: Optional[datetime] = None) -> UserSubscription:
    """Read a subscription, creating the free default on first sign-in."""
    existing = get_subscription(user_id)
    if existing is not None:
        return existing

    default = create_default_subscription(user_id, now)
    try:
        with get_db_session() as session:
            session.execute(
                insert(subscriptions).values(user_id=user_id, version=0, **_plan_values(default))
            )
    except IntegrityError:
        # Either a concurrent first sign-in won the insert, or the row is unreadable
        existing = get_subscription(user_id)
        if existing is not None:
            return existing
        logger.warning("[subscription] replacing malformed row with default", extra={"user_id": user_id})
        return save_subscription(default)

    logger.info("[subscription] created default", extra={"user_id": user_id})
    return default


def perform_action(
    user_id: str,
    action: Union[FeatureAction, str],
    cost: int,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """
    Atomically deduct `cost` credits and log the action.

    The decrement is a single conditional UPDATE, so concurrent requests
    can never push the stored balance below zero.

    Returns:
        LedgerResult; success=False when the stored balance cannot cover the cost

    Raises:
        ValidationError: for an unknown action or negative cost
        NotFoundError: when the user has no subscription row
    """
    action = parse_action(action)
    if cost < 0:
        raise ValidationError("Action cost must be >= 0")
    occurred_at = normalize_now(now)

    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.credits >= cost)
            .values(
                credits=subscriptions.c.credits - cost,
                version=subscriptions.c.version + 1,
            )
        )
        row = session.execute(
            select(subscriptions.c.credits, subscriptions.c.version)
            .where(subscriptions.c.user_id == user_id)
        ).first()
        if row is None:
            raise NotFoundError(f"No subscription for user {user_id}")

        if result.rowcount == 0:
            logger.info(
                "[ledger] INSUFFICIENT",
                extra={"user_id": user_id, "action": action.value, "cost": cost, "credits": row.credits},
            )
            return LedgerResult(success=False, new_credits=row.credits, version=row.version)

        _insert_log(session, user_id, action, cost, row.credits, occurred_at)

    return LedgerResult(success=True, new_credits=row.credits, version=row.version)


def grant_credits(
    user_id: str,
    amount: int,
    action: LedgerAction = LedgerAction.CREDIT_PURCHASE,
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """
    Atomically add credits and log the grant.

    Raises:
        ValidationError: if amount is not positive
        NotFoundError: when the user has no subscription row
    """
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")
    occurred_at = normalize_now(now)

    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(
                credits=subscriptions.c.credits + amount,
                version=subscriptions.c.version + 1,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError(f"No subscription for user {user_id}")
        row = session.execute(
            select(subscriptions.c.credits, subscriptions.c.version)
            .where(subscriptions.c.user_id == user_id)
        ).one()
        _insert_log(session, user_id, action, 0, row.credits, occurred_at, metadata)

    logger.info("[ledger] GRANT", extra={"user_id": user_id, "amount": amount, "credits": row.credits})
    return LedgerResult(success=True, new_credits=row.credits, version=row.version)


def find_by_membership(membership_id: str) -> Optional[UserSubscription]:
    with get_db_session() as session:
        user_id = session.execute(
            select(subscriptions.c.user_id).where(subscriptions.c.membership_id == membership_id)
        ).scalar_one_or_none()
    if user_id is None:
        return None
    return get_subscription(user_id)


def delete_user(user_id: str) -> bool:
    """Remove a user's subscription and ledger. Returns True if a subscription existed."""
    with get_db_session() as session:
        session.execute(delete(usage_logs).where(usage_logs.c.user_id == user_id))
        result = session.execute(delete(subscriptions).where(subscriptions.c.user_id == user_id))
    return result.rowcount > 0
