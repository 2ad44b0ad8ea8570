"""
Licensing API routes.

- POST /api/license/activate: Activate a Whop license key for the caller
- POST /api/webhooks/whop: Whop membership/payment webhooks
"""
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from cvarchitect.api.deps import UserId
from cvarchitect.features.licensing.webhooks import process_webhook
from cvarchitect.features.licensing.whop import activate_license
from cvarchitect.models.subscription import UserSubscription


router = APIRouter(tags=["licensing"])


class ActivateRequest(BaseModel):
    license_key: str
    email: Optional[str] = None


class ActivateResponse(BaseModel):
    success: bool
    plan_id: str
    subscription: UserSubscription


class WebhookResponse(BaseModel):
    received: bool
    handled: bool
    duplicate: bool = False


@router.post("/license/activate", response_model=ActivateResponse)
def activate(request: ActivateRequest, user_id: UserId):
    """
    Validate a license key with Whop and upgrade the caller's plan.

    Errors:
        400: Blank key
        402: Key invalid, inactive, or not for a paid plan
        409: Key already activated by another account
        502: Whop unreachable or not configured
    """
    subscription = activate_license(request.license_key, user_id, request.email)
    return ActivateResponse(success=True, plan_id=subscription.plan_id.value, subscription=subscription)


@router.post("/webhooks/whop", response_model=WebhookResponse)
async def whop_webhook(request: Request):
    body = await request.body()
    result = process_webhook(dict(request.headers), body)
    return WebhookResponse(received=True, handled=result.handled, duplicate=result.duplicate)
