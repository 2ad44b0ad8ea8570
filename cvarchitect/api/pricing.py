"""
Pricing API routes.

Read-only catalog surface:
- GET /api/pricing/plans: All plans
- GET /api/pricing/plans/{plan_id}: One plan
- GET /api/pricing/credit-packs: AI and export credit packs
- GET /api/pricing/templates?plan_id=: Templates a plan can use
"""
from typing import List, Optional, Tuple

from fastapi import APIRouter, Query
from pydantic import BaseModel

from cvarchitect.core.errors import NotFoundError, ValidationError
from cvarchitect.features.pricing import catalog
from cvarchitect.models.pricing import CreditPack, CreditPackKind, Plan, PlanId


router = APIRouter(prefix="/pricing", tags=["pricing"])


class CreditPacksResponse(BaseModel):
    ai: List[CreditPack]
    export: List[CreditPack]


class TemplatesResponse(BaseModel):
    plan_id: PlanId
    templates: Tuple[str, ...]
    free_templates: Tuple[str, ...]


@router.get("/plans", response_model=List[Plan])
def list_plans():
    return list(catalog.list_plans())


@router.get("/plans/{plan_id}", response_model=Plan)
def get_plan(plan_id: str):
    try:
        parsed = catalog.parse_plan_id(plan_id)
    except ValidationError:
        raise NotFoundError(f"Plan not found: {plan_id}")
    return catalog.get_plan(parsed)


@router.get("/credit-packs", response_model=CreditPacksResponse)
def list_credit_packs():
    return CreditPacksResponse(
        ai=list(catalog.get_credit_packs(CreditPackKind.AI)),
        export=list(catalog.get_credit_packs(CreditPackKind.EXPORT)),
    )


@router.get("/templates", response_model=TemplatesResponse)
def list_templates(plan_id: Optional[str] = Query(None, description="Plan to resolve; defaults to free")):
    parsed = catalog.parse_plan_id(plan_id) if plan_id else PlanId.FREE
    return TemplatesResponse(
        plan_id=parsed,
        templates=catalog.templates_for_plan(parsed),
        free_templates=catalog.FREE_TEMPLATES,
    )
