"""
cvarchitect/features/licensing/webhooks.py

Whop webhook processing.

Handles:
- HMAC-SHA256 signature verification
- Idempotency by event id (duplicates are acknowledged, not re-applied)
- Membership activation, renewal and credit-pack payments
- Membership deactivation (downgrade to free)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import hashlib
import hmac
import json
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from cvarchitect.core.config import settings
from cvarchitect.core.database import get_db_session, webhook_events
from cvarchitect.core.errors import AppError, ValidationError
from cvarchitect.core.logging import log_event
from cvarchitect.features.licensing.whop import from_epoch, map_provider_plan
from cvarchitect.features.plans.upgrade import downgrade_to_free, upgrade_plan
from cvarchitect.features.pricing.catalog import get_credit_pack
from cvarchitect.features.subscriptions import service as ledger
from cvarchitect.models.pricing import CreditPackKind, PlanId


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-whop-signature"

ACTIVE_ACTIONS = ("membership_activated", "payment_succeeded")
INACTIVE_ACTIONS = ("membership_deactivated",)


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 401


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    action: str
    handled: bool
    duplicate: bool = False
    user_id: Optional[str] = None
    plan_id: Optional[str] = None


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, provided: Optional[str]) -> bool:
    if not provided:
        return False
    # Accept "sha256=<hex>" as well as bare hex
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(provided, compute_signature(secret, body))


def _check_signature(headers: Mapping[str, str], body: bytes, settings_obj) -> None:
    secret = getattr(settings_obj, "WHOP_WEBHOOK_SECRET", None)
    if not secret:
        if (getattr(settings_obj, "ENV", "development") or "").lower() == "production":
            raise WebhookSignatureError("Webhook secret not configured")
        logger.warning("[webhook] WHOP_WEBHOOK_SECRET unset, skipping signature verification")
        return
    provided = headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.title())
    if not verify_signature(secret, body, provided):
        raise WebhookSignatureError("Invalid webhook signature")


def _record_event(event_id: str, action: str, payload_hash: str) -> bool:
    """
    Claim the event for processing. Returns False if it is processed or in flight.

    A row that recorded an error is re-claimed by clearing the error in a
    single conditional UPDATE, so only one redelivery wins the retry.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(webhook_events.c.processed).where(webhook_events.c.event_id == event_id)
        ).first()
        if existing is not None:
            claimed = session.execute(
                update(webhook_events)
                .where(
                    webhook_events.c.event_id == event_id,
                    webhook_events.c.processed.is_(False),
                    webhook_events.c.error.is_not(None),
                )
                .values(error=None)
            )
            return claimed.rowcount == 1

    try:
        with get_db_session() as session:
            session.execute(
                insert(webhook_events).values(
                    event_id=event_id,
                    event_type=action,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race: another delivery of the same event got there first
        return False
    return True


def _mark_event(event_id: str, *, error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"error": error[:500]} if error else {
        "processed": True,
        "processed_at": datetime.now(timezone.utc),
        "error": None,
    }
    with get_db_session() as session:
        session.execute(
            update(webhook_events).where(webhook_events.c.event_id == event_id).values(**values)
        )


def _resolve_user_id(data: Dict[str, Any]) -> Optional[str]:
    metadata = data.get("metadata") or {}
    if metadata.get("user_id"):
        return str(metadata["user_id"])
    membership_id = data.get("id")
    if membership_id:
        holder = ledger.find_by_membership(str(membership_id))
        if holder is not None:
            return holder.user_id
    return None


def _handle_active(event_id: str, action: str, data: Dict[str, Any], now: datetime) -> WebhookResult:
    user_id = _resolve_user_id(data)
    if user_id is None:
        logger.warning("[webhook] no user for membership", extra={"event_id": event_id, "membership_id": data.get("id")})
        return WebhookResult(event_id=event_id, action=action, handled=False)

    metadata = data.get("metadata") or {}
    if metadata.get("credit_pack"):
        kind = CreditPackKind(metadata.get("credit_pack_kind") or CreditPackKind.AI.value)
        pack = get_credit_pack(int(metadata["credit_pack"]), kind)
        ledger.get_or_create_subscription(user_id, now=now)
        ledger.grant_credits(
            user_id,
            pack.credits,
            now=now,
            metadata={"event_id": event_id, "pack": pack.label, "kind": kind.value},
        )
        logger.info("[webhook] credit pack granted", extra={"user_id": user_id, "credits": pack.credits})
        return WebhookResult(event_id=event_id, action=action, handled=True, user_id=user_id)

    provider_plan = data.get("plan_id")
    plan_id = map_provider_plan(provider_plan)
    if plan_id == PlanId.FREE:
        logger.warning("[webhook] unmapped provider plan", extra={"event_id": event_id, "provider_plan_id": provider_plan})
        return WebhookResult(event_id=event_id, action=action, handled=False, user_id=user_id)

    current = ledger.get_or_create_subscription(user_id, now=now)
    upgraded = upgrade_plan(current, plan_id, now=now)
    updates: Dict[str, Any] = {"membership_id": data.get("id"), "provider_plan_id": provider_plan}
    provider_end = from_epoch(data.get("expiration_date"))
    if provider_end is not None:
        updates["subscription_end"] = provider_end
    saved = ledger.save_subscription(upgraded.model_copy(update=updates))

    logger.info("[webhook] membership active", extra={"user_id": user_id, "plan_id": saved.plan_id.value})
    return WebhookResult(event_id=event_id, action=action, handled=True, user_id=user_id, plan_id=saved.plan_id.value)


def _handle_inactive(event_id: str, action: str, data: Dict[str, Any], now: datetime) -> WebhookResult:
    membership_id = data.get("id")
    holder = ledger.find_by_membership(str(membership_id)) if membership_id else None
    if holder is None:
        logger.warning("[webhook] deactivation for unknown membership", extra={"event_id": event_id, "membership_id": membership_id})
        return WebhookResult(event_id=event_id, action=action, handled=False)

    ledger.save_subscription(downgrade_to_free(holder, now=now))
    logger.info("[webhook] membership deactivated", extra={"user_id": holder.user_id, "membership_id": membership_id})
    return WebhookResult(event_id=event_id, action=action, handled=True, user_id=holder.user_id, plan_id=PlanId.FREE.value)


def process_webhook(
    headers: Mapping[str, str],
    body: bytes,
    *,
    settings_obj=None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Verify, deduplicate and apply a Whop webhook.

    1. Verify signature
    2. Parse payload
    3. Skip if the event was already processed
    4. Apply state changes
    5. Mark as processed (or record the error and re-raise)

    Raises:
        WebhookSignatureError: signature missing or wrong
        ValidationError: body is not a JSON object with an action
    """
    cfg = settings_obj or settings
    _check_signature(headers, body, cfg)

    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(event, dict) or not event.get("action"):
        raise ValidationError("Webhook payload missing action")

    action = str(event["action"])
    data = event.get("data") or {}
    payload_hash = hashlib.sha256(body).hexdigest()
    event_id = str(event.get("id") or payload_hash)
    processed_at = now or datetime.now(timezone.utc)

    if action not in ACTIVE_ACTIONS + INACTIVE_ACTIONS:
        logger.info("[webhook] unhandled event type", extra={"action": action, "event_id": event_id})
        return WebhookResult(event_id=event_id, action=action, handled=False)

    if not _record_event(event_id, action, payload_hash):
        logger.info("[webhook] duplicate event skipped", extra={"action": action, "event_id": event_id})
        return WebhookResult(event_id=event_id, action=action, handled=False, duplicate=True)

    try:
        if action in ACTIVE_ACTIONS:
            result = _handle_active(event_id, action, data, processed_at)
        else:
            result = _handle_inactive(event_id, action, data, processed_at)
    except Exception as e:
        log_event(
            "error",
            "[webhook] processing failed",
            event_type=action,
            error_code="webhook_failed",
            extra={"event_id": event_id, "error": e},
        )
        _mark_event(event_id, error=str(e) or type(e).__name__)
        raise

    _mark_event(event_id)
    return result
