"""
Tests for the static plan catalog and access rules.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from cvarchitect.core.errors import NotFoundError, ValidationError
from cvarchitect.features.pricing import catalog
from cvarchitect.models.pricing import (
    UNLIMITED,
    CreditPackKind,
    CreditRules,
    FeatureAction,
    PlanId,
)


def test_every_plan_prices_every_action():
    """Cost tables are exhaustive for all plans."""
    for plan in catalog.list_plans():
        assert set(plan.credit_rules.credit_costs) == set(FeatureAction)


def test_credit_rules_reject_missing_action():
    costs = {a: 1 for a in FeatureAction if a != FeatureAction.COVER_LETTER}
    with pytest.raises(PydanticValidationError):
        CreditRules(starting_credits=10, credit_costs=costs)


def test_credit_rules_reject_negative_cost():
    costs = {a: 1 for a in FeatureAction}
    costs[FeatureAction.AI_REWRITE] = -1
    with pytest.raises(PydanticValidationError):
        CreditRules(starting_credits=10, credit_costs=costs)


def test_plan_is_frozen():
    plan = catalog.get_plan(PlanId.FREE)
    with pytest.raises(PydanticValidationError):
        plan.name = "Modified"


def test_catalog_constants():
    assert catalog.get_plan("free").credit_rules.starting_credits == 10
    assert catalog.get_plan("week_pass").credit_rules.starting_credits == 75
    assert catalog.get_plan("week_pass").fixed_term_days == 7
    assert catalog.get_plan("pro_monthly").credit_rules.monthly_credits == 150
    assert catalog.get_plan("pro_quarterly").credit_rules.monthly_credits == 300
    assert catalog.get_plan("pro_quarterly").popular is True
    assert catalog.get_plan("lifetime").credit_rules.lifetime_credits == 100
    assert catalog.get_plan("lifetime").price.lifetime == 97


def test_get_plan_unknown_falls_back_to_free(caplog):
    plan = catalog.get_plan("platinum")
    assert plan.id == PlanId.FREE
    assert any("unknown plan id" in r.getMessage() for r in caplog.records)


def test_parse_plan_id_is_strict():
    assert catalog.parse_plan_id("lifetime") == PlanId.LIFETIME
    with pytest.raises(ValidationError):
        catalog.parse_plan_id("platinum")


def test_is_pro():
    assert catalog.is_pro(PlanId.FREE) is False
    for plan_id in (PlanId.WEEK_PASS, PlanId.PRO_MONTHLY, PlanId.PRO_QUARTERLY, PlanId.LIFETIME):
        assert catalog.is_pro(plan_id) is True


class TestTemplates:
    def test_free_plan_gets_free_templates(self):
        assert catalog.templates_for_plan("free") == catalog.FREE_TEMPLATES

    def test_paid_plans_get_all_templates(self):
        assert catalog.templates_for_plan("week_pass") == catalog.ALL_TEMPLATES

    def test_template_access(self):
        assert catalog.can_access_template("free", "minimalist") is True
        assert catalog.can_access_template("free", "vanguard") is False
        assert catalog.can_access_template("pro_quarterly", "elite") is True

    def test_unknown_template_is_denied(self):
        assert catalog.can_access_template("lifetime", "comic-sans") is False


class TestCreditPacks:
    def test_ai_pack_lookup(self):
        pack = catalog.get_credit_pack(60)
        assert pack.price == 9
        assert pack.savings == "25% off"

    def test_export_pack_lookup(self):
        pack = catalog.get_credit_pack(30, CreditPackKind.EXPORT)
        assert pack.price == 7
        assert pack.label == "Standard"

    def test_unknown_pack_raises(self):
        with pytest.raises(NotFoundError):
            catalog.get_credit_pack(42)

    def test_pack_catalog_sizes(self):
        assert [p.credits for p in catalog.CREDIT_PACKS] == [25, 60, 150, 300]
        assert [p.credits for p in catalog.EXPORT_CREDIT_PACKS] == [10, 30, 100]


class TestCostsAndLimits:
    def test_metered_costs_on_free(self):
        free = catalog.get_plan("free")
        assert catalog.credit_cost(free, FeatureAction.AI_REWRITE) == 1
        assert catalog.credit_cost(free, FeatureAction.COVER_LETTER) == 3
        assert catalog.credit_cost(free, FeatureAction.CV_REGENERATION) == 5
        assert catalog.credit_cost(free, FeatureAction.PDF_EXPORT) == 0

    def test_unlimited_features_cost_nothing(self):
        week = catalog.get_plan("week_pass")
        assert catalog.feature_limit(week, FeatureAction.AI_REWRITE) == UNLIMITED
        assert catalog.credit_cost(week, FeatureAction.AI_REWRITE) == 0

    def test_cover_letters_stay_metered_on_paid_plans(self):
        week = catalog.get_plan("week_pass")
        assert catalog.feature_limit(week, FeatureAction.COVER_LETTER) == 10
        assert catalog.credit_cost(week, FeatureAction.COVER_LETTER) == 3

    def test_unmetered_actions_have_no_limit(self):
        free = catalog.get_plan("free")
        assert catalog.feature_limit(free, FeatureAction.PDF_EXPORT) is None
        assert catalog.feature_limit(free, FeatureAction.TEMPLATE_ACCESS) is None
