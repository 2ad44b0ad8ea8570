"""
cvarchitect/features/pricing/catalog.py

Static plan catalog and access rules.

Handles:
- Plan lookup (lenient for stored data, strict at API boundaries)
- Pro detection
- Template tiers
- Credit pack catalogs
- Per-plan action costs and feature limits
"""

import logging
from typing import Dict, Optional, Tuple, Union

from cvarchitect.core.errors import NotFoundError, ValidationError
from cvarchitect.models.pricing import (
    UNLIMITED,
    BillingCycle,
    CreditPack,
    CreditPackKind,
    CreditRules,
    FeatureAction,
    FeatureLimit,
    Plan,
    PlanFeatures,
    PlanId,
    PlanPrice,
    TemplateAccess,
)

logger = logging.getLogger(__name__)


FREE_TEMPLATES: Tuple[str, ...] = ("free", "simplepro", "minimalist")
BASIC_TEMPLATES: Tuple[str, ...] = FREE_TEMPLATES + ("vanguard", "elevate", "prime", "impact")
ALL_TEMPLATES: Tuple[str, ...] = BASIC_TEMPLATES + (
    "dev",
    "elite",
    "apex",
    "modern",
    "executive",
    "classic",
    "wonsulting",
    "styled",
    "smart",
    "elegant",
)

_TEMPLATES_BY_ACCESS: Dict[TemplateAccess, Tuple[str, ...]] = {
    TemplateAccess.FREE: FREE_TEMPLATES,
    TemplateAccess.BASIC: BASIC_TEMPLATES,
    TemplateAccess.ALL: ALL_TEMPLATES,
}

# Which PlanFeatures field meters each action (None = not metered)
FEATURE_FIELDS: Dict[FeatureAction, Optional[str]] = {
    FeatureAction.RESUME_UPLOAD: "resume_uploads",
    FeatureAction.RESUME_ANALYSIS: "resume_analyses",
    FeatureAction.JOB_MATCH: "job_matches",
    FeatureAction.AI_REWRITE: "ai_rewrites",
    FeatureAction.CV_REGENERATION: "cv_regenerations",
    FeatureAction.COVER_LETTER: "cover_letter_generation",
    FeatureAction.BULLET_OPTIMIZATION: "bullet_optimizations",
    FeatureAction.KEYWORD_ENHANCEMENT: "keyword_enhancements",
    FeatureAction.PDF_EXPORT: None,
    FeatureAction.TEMPLATE_ACCESS: None,
}

_BASE_COSTS: Dict[FeatureAction, int] = {
    FeatureAction.AI_REWRITE: 1,
    FeatureAction.BULLET_OPTIMIZATION: 1,
    FeatureAction.KEYWORD_ENHANCEMENT: 1,
    FeatureAction.COVER_LETTER: 3,
    FeatureAction.CV_REGENERATION: 5,
    FeatureAction.RESUME_UPLOAD: 5,
    FeatureAction.RESUME_ANALYSIS: 0,
    FeatureAction.JOB_MATCH: 0,
    FeatureAction.PDF_EXPORT: 0,
    FeatureAction.TEMPLATE_ACCESS: 0,
}


def _paid_features(cover_letters: int, max_pages: int) -> PlanFeatures:
    return PlanFeatures(
        resume_uploads=UNLIMITED,
        resume_analyses=UNLIMITED,
        ai_rewrites=UNLIMITED,
        job_matches=UNLIMITED,
        cover_letter_generation=cover_letters,
        bullet_optimizations=UNLIMITED,
        cv_regenerations=UNLIMITED,
        keyword_enhancements=UNLIMITED,
        all_templates=True,
        template_access=TemplateAccess.ALL,
        max_resume_pages=max_pages,
        priority_processing=True,
        multiple_versions=True,
    )


PLANS: Dict[PlanId, Plan] = {
    PlanId.FREE: Plan(
        id=PlanId.FREE,
        name="Free Guest",
        description="Try CV Architect with basic features",
        price=PlanPrice(monthly=0),
        features=PlanFeatures(
            resume_uploads=1,
            resume_analyses=1,
            ai_rewrites=0,
            job_matches=1,
            cover_letter_generation=0,
            bullet_optimizations=0,
            cv_regenerations=0,
            keyword_enhancements=0,
        ),
        credit_rules=CreditRules(
            starting_credits=10,
            credits_reset=False,
            credit_costs=_BASE_COSTS,
        ),
    ),
    PlanId.WEEK_PASS: Plan(
        id=PlanId.WEEK_PASS,
        name="Week Pass (Sprint)",
        description="Unlimited access for 7 days",
        price=PlanPrice(monthly=9),  # one-time charge for the 7-day term
        features=_paid_features(cover_letters=10, max_pages=3),
        credit_rules=CreditRules(
            starting_credits=75,
            credits_reset=False,
            credit_costs=_BASE_COSTS,
        ),
        fixed_term_days=7,
    ),
    PlanId.PRO_MONTHLY: Plan(
        id=PlanId.PRO_MONTHLY,
        name="Pro Monthly (Marathon)",
        description="Month-to-month access for an active job search",
        price=PlanPrice(monthly=19),
        features=_paid_features(cover_letters=50, max_pages=10),
        credit_rules=CreditRules(
            starting_credits=150,
            monthly_credits=150,
            credits_reset=True,
            credit_costs=_BASE_COSTS,
        ),
    ),
    PlanId.PRO_QUARTERLY: Plan(
        id=PlanId.PRO_QUARTERLY,
        name="Pro (3 Months)",
        description="Perfect for Serious Job Hunters",
        price=PlanPrice(monthly=29),  # billed every 3 months
        features=_paid_features(cover_letters=50, max_pages=10),
        credit_rules=CreditRules(
            starting_credits=300,
            monthly_credits=300,
            credits_reset=True,
            credit_costs=_BASE_COSTS,
        ),
        default_billing_cycle=BillingCycle.QUARTERLY,
        popular=True,
    ),
    PlanId.LIFETIME: Plan(
        id=PlanId.LIFETIME,
        name="Lifetime Access",
        description="Pay once, use forever",
        price=PlanPrice(lifetime=97),
        features=_paid_features(cover_letters=50, max_pages=10),
        credit_rules=CreditRules(
            starting_credits=100,
            monthly_credits=100,
            lifetime_credits=100,
            credits_reset=True,
            credit_costs=_BASE_COSTS,
        ),
        default_billing_cycle=BillingCycle.LIFETIME,
    ),
}


CREDIT_PACKS: Tuple[CreditPack, ...] = (
    CreditPack(credits=25, price=5, label="Starter Pack", description="Perfect for trying AI features"),
    CreditPack(credits=60, price=9, label="Standard", description="Most popular choice", savings="25% off"),
    CreditPack(credits=150, price=19, label="Advanced", description="For serious job seekers", savings="35% off"),
    CreditPack(credits=300, price=29, label="Pro Boost", description="Maximum value", savings="40% off"),
)

EXPORT_CREDIT_PACKS: Tuple[CreditPack, ...] = (
    CreditPack(credits=10, price=3, label="Basic", description="10 PDF exports"),
    CreditPack(credits=30, price=7, label="Standard", description="30 PDF exports", savings="22% off"),
    CreditPack(credits=100, price=20, label="Premium", description="100 PDF exports", savings="33% off"),
)

_PACKS_BY_KIND: Dict[CreditPackKind, Tuple[CreditPack, ...]] = {
    CreditPackKind.AI: CREDIT_PACKS,
    CreditPackKind.EXPORT: EXPORT_CREDIT_PACKS,
}


def parse_plan_id(value: Union[PlanId, str]) -> PlanId:
    """
    Strictly parse a plan id.

    Raises:
        ValidationError: if the value is not a known plan id
    """
    if isinstance(value, PlanId):
        return value
    try:
        return PlanId(value)
    except ValueError:
        raise ValidationError(f"Unknown plan id: {value}")


def get_plan(plan_id: Union[PlanId, str]) -> Plan:
    """
    Get a catalog plan. Unknown ids fall back to the free plan.

    Stored records can carry ids from older catalogs; reads must not fail on them.
    """
    try:
        return PLANS[PlanId(plan_id)]
    except ValueError:
        logger.warning("[pricing] unknown plan id, falling back to free", extra={"plan_id": str(plan_id)})
        return PLANS[PlanId.FREE]


def list_plans() -> Tuple[Plan, ...]:
    return tuple(PLANS.values())


def feature_limit(plan: Plan, action: FeatureAction) -> Optional[FeatureLimit]:
    """Return the plan's limit for the feature metering `action` (None when unmetered)."""
    field = FEATURE_FIELDS[action]
    if field is None:
        return None
    return getattr(plan.features, field)


def is_unlimited(plan: Plan, action: FeatureAction) -> bool:
    return feature_limit(plan, action) == UNLIMITED


def credit_cost(plan: Plan, action: FeatureAction) -> int:
    """
    Credits charged for one use of `action` under `plan`.

    Unlimited features and plans that do not use credits charge nothing.
    """
    if not plan.credit_rules.uses_credits or is_unlimited(plan, action):
        return 0
    return plan.credit_rules.credit_costs[action]


def is_pro(plan_id: Union[PlanId, str]) -> bool:
    """True for plans with unlimited AI usage."""
    return is_unlimited(get_plan(plan_id), FeatureAction.AI_REWRITE)


def templates_for_plan(plan_id: Union[PlanId, str]) -> Tuple[str, ...]:
    plan = get_plan(plan_id)
    return _TEMPLATES_BY_ACCESS[plan.features.template_access]


def can_access_template(plan_id: Union[PlanId, str], template_id: str) -> bool:
    if template_id in FREE_TEMPLATES:
        return True
    return template_id in templates_for_plan(plan_id)


def get_credit_packs(kind: CreditPackKind = CreditPackKind.AI) -> Tuple[CreditPack, ...]:
    return _PACKS_BY_KIND[CreditPackKind(kind)]


def get_credit_pack(credits: int, kind: CreditPackKind = CreditPackKind.AI) -> CreditPack:
    """
    Look up a credit pack by size.

    Raises:
        NotFoundError: if no pack of that size exists
    """
    for pack in get_credit_packs(kind):
        if pack.credits == credits:
            return pack
    raise NotFoundError(f"No {CreditPackKind(kind).value} credit pack with {credits} credits")
