"""
cvarchitect/features/licensing/whop.py

Whop license validation and activation.

Handles:
- License key validation against the Whop API
- Provider plan -> internal plan mapping
- Activation: plan upgrade bound to the provider membership

All HTTP calls go through WhopClient so tests can inject a transport.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

import httpx
from sqlalchemy.exc import IntegrityError

from cvarchitect.core.config import settings
from cvarchitect.core.errors import ConflictError, LicenseError, ProviderError, ValidationError
from cvarchitect.features.plans.upgrade import upgrade_plan
from cvarchitect.features.subscriptions import service as ledger
from cvarchitect.models.pricing import PlanId
from cvarchitect.models.subscription import UserSubscription


logger = logging.getLogger(__name__)

ACTIVATABLE_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class WhopMembership:
    id: str
    plan: Optional[str]
    status: Optional[str]
    valid: bool
    renewal_period_start: Optional[datetime] = None
    renewal_period_end: Optional[datetime] = None
    expires_at: Optional[datetime] = None


def from_epoch(value: Any) -> Optional[datetime]:
    """Provider timestamps are epoch seconds; missing or zero means unset."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        return body.get("message") or (body.get("error") or {}).get("message") or default
    return default


class WhopClient:
    """Minimal Whop API client (license validation only)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.whop.com/api/v2",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key:
            raise ProviderError("Whop API key not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, transport: Optional[httpx.BaseTransport] = None) -> "WhopClient":
        return cls(
            api_key=settings.WHOP_API_KEY,
            base_url=settings.WHOP_API_BASE,
            timeout=settings.WHOP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def validate_license(self, license_key: str, metadata: Dict[str, Any]) -> WhopMembership:
        """
        Validate a license key and attach our metadata to the membership.

        Raises:
            LicenseError: provider rejected the key (4xx)
            ProviderError: provider unreachable, erroring, or returned garbage
        """
        url = f"{self.base_url}/memberships/{license_key}/validate_license"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, headers=headers, json={"metadata": metadata})
        except httpx.HTTPError as e:
            raise ProviderError(f"Whop request failed: {e}")

        if response.status_code >= 500:
            raise ProviderError(f"Whop validation failed: {response.status_code}")
        if response.status_code >= 400:
            raise LicenseError(_error_message(response, "Invalid license key"))

        try:
            body = response.json()
        except ValueError:
            raise ProviderError("Whop returned a non-JSON response")

        return WhopMembership(
            id=str(body.get("id") or license_key),
            plan=body.get("plan"),
            status=body.get("status"),
            valid=bool(body.get("valid")),
            renewal_period_start=from_epoch(body.get("renewal_period_start")),
            renewal_period_end=from_epoch(body.get("renewal_period_end")),
            expires_at=from_epoch(body.get("expires_at")),
        )


def map_provider_plan(provider_plan_id: Optional[str], settings_obj=None) -> PlanId:
    """Sprint -> week_pass, Marathon -> pro_monthly, anything else -> free."""
    cfg = settings_obj or settings
    if provider_plan_id and provider_plan_id == cfg.WHOP_SPRINT_PLAN_ID:
        return PlanId.WEEK_PASS
    if provider_plan_id and provider_plan_id == cfg.WHOP_MARATHON_PLAN_ID:
        return PlanId.PRO_MONTHLY
    return PlanId.FREE


def _ensure_not_bound_elsewhere(membership_id: str, user_id: str) -> None:
    holder = ledger.find_by_membership(membership_id)
    if holder is not None and holder.user_id != user_id:
        logger.warning(
            "[license] key already activated by another user",
            extra={"user_id": user_id, "membership_id": membership_id},
        )
        raise ConflictError("This license key has already been activated by another account")


def activate_license(
    license_key: str,
    user_id: str,
    email: Optional[str] = None,
    *,
    client: Optional[WhopClient] = None,
    now: Optional[datetime] = None,
) -> UserSubscription:
    """
    Validate a license key and upgrade the user's subscription.

    Args:
        license_key: Key the user pasted (the Whop membership id)
        user_id: Signed-in user activating the key
        email: User email, forwarded to the provider as metadata
        client: Injected Whop client (defaults to settings)
        now: Activation time

    Returns:
        The persisted subscription

    Raises:
        ValidationError: blank key
        ConflictError: key already bound to another user
        LicenseError: key invalid, inactive, or not for a paid plan
        ProviderError: provider unreachable or not configured
    """
    key = (license_key or "").strip()
    if not key:
        raise ValidationError("License key is required")

    activated_at = now or datetime.now(timezone.utc)
    _ensure_not_bound_elsewhere(key, user_id)

    whop = client or WhopClient.from_settings()
    membership = whop.validate_license(
        key,
        {"user_id": user_id, "email": email, "activated_at": activated_at.isoformat()},
    )

    if not membership.valid:
        raise LicenseError("License key is not valid")
    if membership.status not in ACTIVATABLE_STATUSES:
        raise LicenseError(
            f"License key status is {membership.status}. Only active licenses can be activated."
        )

    plan_id = map_provider_plan(membership.plan)
    if plan_id == PlanId.FREE:
        raise LicenseError("This license key is not for a valid plan")

    if membership.id != key:
        _ensure_not_bound_elsewhere(membership.id, user_id)

    current = ledger.get_or_create_subscription(user_id, now=activated_at)
    upgraded = upgrade_plan(current, plan_id, now=membership.renewal_period_start or activated_at)
    provider_end = membership.renewal_period_end or membership.expires_at
    updates = {"membership_id": membership.id, "provider_plan_id": membership.plan}
    if provider_end is not None:
        updates["subscription_end"] = provider_end

    try:
        saved = ledger.save_subscription(upgraded.model_copy(update=updates))
    except IntegrityError:
        # Lost a race with another account activating the same membership
        raise ConflictError("This license key has already been activated by another account")

    logger.info(
        "[license] ACTIVATED",
        extra={"user_id": user_id, "plan_id": saved.plan_id.value, "membership_id": membership.id},
    )
    return saved
