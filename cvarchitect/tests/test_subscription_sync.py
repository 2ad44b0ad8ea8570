"""
Tests for optimistic gated actions and plan changes reconciled with the ledger.
"""
from datetime import timedelta
from unittest.mock import patch

from cvarchitect.features.entitlements.manager import SubscriptionManager, create_default_subscription
from cvarchitect.features.plans.upgrade import upgrade_plan
from cvarchitect.features.subscriptions import service, sync
from cvarchitect.models.pricing import FeatureAction, PlanId
from cvarchitect.models.subscription import UserSubscription


def _signed_in(user_id="user_1", now=None) -> SubscriptionManager:
    return SubscriptionManager(service.get_or_create_subscription(user_id, now=now))


class TestGatedAction:
    def test_guest_stays_local(self):
        manager = SubscriptionManager()
        with patch.object(sync.ledger, "perform_action") as remote:
            outcome = sync.run_gated_action(manager, "ai_rewrite")

        remote.assert_not_called()
        assert outcome.allowed is True
        assert outcome.credits == 9
        assert outcome.synced is False

    def test_denial_shows_paywall_without_remote_call(self):
        manager = SubscriptionManager(UserSubscription(user_id="user_1", plan_id=PlanId.FREE, credits=0))
        with patch.object(sync.ledger, "perform_action") as remote:
            outcome = sync.run_gated_action(manager, FeatureAction.AI_REWRITE, user_id="user_1")

        remote.assert_not_called()
        assert outcome.allowed is False
        assert outcome.paywall == sync.PAYWALL_CREDITS
        assert "Insufficient credits" in outcome.reason

    def test_signed_in_action_syncs(self, fixed_now):
        manager = _signed_in(now=fixed_now)

        outcome = sync.run_gated_action(manager, "ai_rewrite", user_id="user_1", now=fixed_now)

        assert outcome.allowed is True
        assert outcome.synced is True
        assert outcome.credits == 9
        assert manager.get_subscription().version == 1
        assert service.get_subscription("user_1").credits == 9

    def test_zero_cost_action_is_logged(self, fixed_now):
        manager = _signed_in(now=fixed_now)

        outcome = sync.run_gated_action(manager, "pdf_export", user_id="user_1", now=fixed_now)

        assert outcome.allowed is True
        assert outcome.cost == 0
        assert outcome.synced is True
        stored = service.get_subscription("user_1")
        assert stored.credits == 10
        assert [(r.action, r.credits_cost, r.remaining_credits) for r in stored.usage_history] == [
            (FeatureAction.PDF_EXPORT, 0, 10)
        ]
        assert stored.usage_stats.total_actions == 1
        assert stored.usage_stats.total_credits_used == 0

    def test_remote_failure_keeps_optimistic_result(self, fixed_now):
        manager = _signed_in(now=fixed_now)
        with patch.object(sync.ledger, "perform_action", side_effect=RuntimeError("database unavailable")):
            outcome = sync.run_gated_action(manager, "ai_rewrite", user_id="user_1", now=fixed_now)

        assert outcome.allowed is True
        assert outcome.warning == sync.SYNC_FAILED_WARNING
        assert outcome.synced is False
        assert manager.get_credit_balance() == 9
        # Server untouched; the next fetch reconciles
        assert service.get_subscription("user_1").credits == 10

    def test_server_refusal_adopts_server_balance(self, fixed_now):
        manager = _signed_in(now=fixed_now)
        drained = service.get_subscription("user_1").model_copy(update={"credits": 0})
        service.save_subscription(drained)

        outcome = sync.run_gated_action(manager, "ai_rewrite", user_id="user_1", now=fixed_now)

        assert outcome.allowed is False
        assert outcome.paywall == sync.PAYWALL_CREDITS
        assert outcome.reason == sync.REMOTE_INSUFFICIENT_REASON
        assert outcome.credits == 0
        assert manager.get_credit_balance() == 0
        local = manager.get_subscription()
        assert local.usage_history == ()
        assert local.usage_stats.total_actions == 0
        assert local.usage_stats.total_credits_used == 0

    def test_success_records_server_balance(self, fixed_now):
        manager = _signed_in(now=fixed_now)
        service.grant_credits("user_1", 5, now=fixed_now)

        outcome = sync.run_gated_action(manager, "ai_rewrite", user_id="user_1", now=fixed_now)

        assert outcome.credits == 14
        latest = manager.get_subscription().usage_history[0]
        assert latest.action == FeatureAction.AI_REWRITE
        assert latest.remaining_credits == 14
        assert manager.get_credit_balance() == 14


class TestChangePlan:
    def test_guest_upgrade_is_local(self, fixed_now):
        manager = SubscriptionManager()
        with patch.object(sync.ledger, "save_subscription") as save:
            outcome = sync.change_plan(manager, "pro_monthly", now=fixed_now)

        save.assert_not_called()
        assert outcome.subscription.plan_id == PlanId.PRO_MONTHLY
        assert manager.get_credit_balance() == 150

    def test_signed_in_upgrade_persists(self, fixed_now):
        manager = _signed_in(now=fixed_now)

        outcome = sync.change_plan(manager, "pro_quarterly", user_id="user_1", now=fixed_now)

        assert outcome.synced is True
        assert outcome.warning is None
        stored = service.get_subscription("user_1")
        assert stored.plan_id == PlanId.PRO_QUARTERLY
        assert stored.credits == 300
        assert manager.get_subscription().version == stored.version

    def test_failed_save_does_not_roll_back(self, fixed_now):
        manager = _signed_in(now=fixed_now)
        with patch.object(sync.ledger, "save_subscription", side_effect=RuntimeError("write failed")):
            outcome = sync.change_plan(manager, "pro_monthly", user_id="user_1", now=fixed_now)

        assert outcome.warning == "Plan upgraded locally, but failed to save to account."
        assert manager.get_user_plan().id == PlanId.PRO_MONTHLY
        assert service.get_subscription("user_1").plan_id == PlanId.FREE


class TestReconcile:
    def test_newer_remote_wins(self):
        local = create_default_subscription("u").model_copy(update={"credits": 4, "version": 2})
        remote = local.model_copy(update={"credits": 7, "version": 3})
        assert sync.reconcile(local, remote) is remote

    def test_equal_version_prefers_remote(self):
        local = create_default_subscription("u").model_copy(update={"credits": 4, "version": 2})
        remote = local.model_copy(update={"credits": 7})
        assert sync.reconcile(local, remote) is remote

    def test_stale_remote_ignored(self):
        local = create_default_subscription("u").model_copy(update={"credits": 4, "version": 5})
        remote = local.model_copy(update={"credits": 7, "version": 3})
        assert sync.reconcile(local, remote) is local

    def test_refresh_from_server(self, fixed_now):
        manager = SubscriptionManager(create_default_subscription("user_1"))
        service.get_or_create_subscription("user_1", now=fixed_now)
        service.grant_credits("user_1", 25, now=fixed_now)

        merged = sync.refresh_from_server(manager, "user_1")

        assert merged.credits == 35
        assert manager.get_credit_balance() == 35


class TestLoadManager:
    def test_expired_term_downgrades(self, fixed_now):
        current = service.get_or_create_subscription("user_1", now=fixed_now)
        service.save_subscription(upgrade_plan(current, PlanId.WEEK_PASS, now=fixed_now))

        manager = sync.load_manager("user_1", now=fixed_now + timedelta(days=8))

        assert manager.get_user_plan().id == PlanId.FREE
        assert manager.get_credit_balance() == 10
        assert service.get_subscription("user_1").is_active is False

    def test_active_term_kept(self, fixed_now):
        current = service.get_or_create_subscription("user_1", now=fixed_now)
        service.save_subscription(upgrade_plan(current, PlanId.WEEK_PASS, now=fixed_now))

        manager = sync.load_manager("user_1", now=fixed_now + timedelta(days=2))

        assert manager.get_user_plan().id == PlanId.WEEK_PASS
