"""
cvarchitect/models/pricing.py

Catalog models: plans, their feature limits and credit rules, and credit packs.

Plans are immutable catalog entries. Every gated action has a cost in every
plan (the cost table is exhaustive), so a missing cost is a construction
error rather than a silent zero at runtime.
"""

from enum import Enum
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


UNLIMITED = "unlimited"

FeatureLimit = Union[int, Literal["unlimited"]]


class PlanId(str, Enum):
    FREE = "free"
    WEEK_PASS = "week_pass"
    PRO_MONTHLY = "pro_monthly"
    PRO_QUARTERLY = "pro_quarterly"
    LIFETIME = "lifetime"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class FeatureAction(str, Enum):
    """Gated actions a user can spend credits on."""
    RESUME_UPLOAD = "resume_upload"
    RESUME_ANALYSIS = "resume_analysis"
    JOB_MATCH = "job_match"
    AI_REWRITE = "ai_rewrite"
    CV_REGENERATION = "cv_regeneration"
    COVER_LETTER = "cover_letter"
    BULLET_OPTIMIZATION = "bullet_optimization"
    KEYWORD_ENHANCEMENT = "keyword_enhancement"
    PDF_EXPORT = "pdf_export"
    TEMPLATE_ACCESS = "template_access"


class LedgerAction(str, Enum):
    """Ledger events that are not feature usage (grants, refills)."""
    CREDIT_PURCHASE = "credit_purchase"
    CREDIT_RESET = "credit_reset"


class TemplateAccess(str, Enum):
    FREE = "free"
    BASIC = "basic"
    ALL = "all"


class CreditPackKind(str, Enum):
    AI = "ai"
    EXPORT = "export"


class PlanPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly: Optional[float] = None
    yearly: Optional[float] = None
    lifetime: Optional[float] = None


class PlanFeatures(BaseModel):
    """Per-feature limits plus boolean capability flags."""
    model_config = ConfigDict(frozen=True)

    resume_uploads: FeatureLimit
    resume_analyses: FeatureLimit
    ai_rewrites: FeatureLimit
    job_matches: FeatureLimit
    cover_letter_generation: FeatureLimit
    bullet_optimizations: FeatureLimit
    cv_regenerations: FeatureLimit
    keyword_enhancements: FeatureLimit
    pdf_export: bool = True
    watermark_free: bool = True
    all_templates: bool = False
    template_access: TemplateAccess = TemplateAccess.FREE
    max_resume_pages: int = 1
    priority_processing: bool = False
    multiple_versions: bool = False
    live_editing: bool = True


class CreditRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    uses_credits: bool = True
    starting_credits: int = Field(ge=0)
    monthly_credits: Optional[int] = Field(default=None, ge=0)
    lifetime_credits: Optional[int] = Field(default=None, ge=0)
    credits_reset: bool = False
    credit_costs: Dict[FeatureAction, int]

    @model_validator(mode="after")
    def _costs_are_exhaustive(self):
        missing = [a.value for a in FeatureAction if a not in self.credit_costs]
        if missing:
            raise ValueError(f"credit_costs missing actions: {', '.join(missing)}")
        negative = [a.value for a, cost in self.credit_costs.items() if cost < 0]
        if negative:
            raise ValueError(f"credit_costs must be >= 0: {', '.join(negative)}")
        return self


class Plan(BaseModel):
    """
    Plan represents a purchasable tier.

    Plans include pricing, feature limits and credit rules. Fixed-term
    plans (the week pass) end after `fixed_term_days` regardless of cycle.
    """
    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    description: str
    price: PlanPrice
    features: PlanFeatures
    credit_rules: CreditRules
    default_billing_cycle: BillingCycle = BillingCycle.MONTHLY
    fixed_term_days: Optional[int] = Field(default=None, gt=0)
    popular: bool = False


class CreditPack(BaseModel):
    model_config = ConfigDict(frozen=True)

    credits: int = Field(gt=0)
    price: float = Field(ge=0)
    label: str
    description: Optional[str] = None
    savings: Optional[str] = None
