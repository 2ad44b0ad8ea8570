"""
Tests for Whop webhook processing: signatures, idempotency, state changes.
"""
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import select

from cvarchitect.core.database import get_db_session, webhook_events
from cvarchitect.core.errors import ValidationError
from cvarchitect.features.licensing.webhooks import (
    SIGNATURE_HEADER,
    WebhookSignatureError,
    _mark_event,
    _record_event,
    compute_signature,
    process_webhook,
    verify_signature,
)
from cvarchitect.features.subscriptions import service
from cvarchitect.models.pricing import PlanId

SECRET = "whsec_test"
CFG = SimpleNamespace(WHOP_WEBHOOK_SECRET=SECRET, ENV="test")


def _send(event, cfg=CFG, now=None, signature=None):
    body = json.dumps(event).encode()
    sig = signature if signature is not None else compute_signature(SECRET, body)
    return process_webhook({SIGNATURE_HEADER: sig}, body, settings_obj=cfg, now=now)


def _activation(event_id="evt_1", user_id="user_1", plan="plan_DTNT5Oh5vIuPN"):
    return {
        "id": event_id,
        "action": "membership_activated",
        "data": {"id": "mem_1", "plan_id": plan, "metadata": {"user_id": user_id}},
    }


class TestSignature:
    def test_roundtrip(self):
        body = b'{"action":"x"}'
        sig = compute_signature(SECRET, body)
        assert verify_signature(SECRET, body, sig) is True
        assert verify_signature(SECRET, body, f"sha256={sig}") is True

    def test_rejects_wrong_or_missing(self):
        body = b'{"action":"x"}'
        assert verify_signature(SECRET, body, "deadbeef") is False
        assert verify_signature(SECRET, body, None) is False
        assert verify_signature("other", body, compute_signature(SECRET, body)) is False

    def test_bad_signature_raises(self):
        with pytest.raises(WebhookSignatureError):
            _send(_activation(), signature="deadbeef")

    def test_missing_secret_skips_outside_production(self, fixed_now):
        cfg = SimpleNamespace(WHOP_WEBHOOK_SECRET=None, ENV="development")
        result = _send(_activation(), cfg=cfg, now=fixed_now, signature="")
        assert result.handled is True

    def test_missing_secret_rejected_in_production(self):
        cfg = SimpleNamespace(WHOP_WEBHOOK_SECRET=None, ENV="production")
        with pytest.raises(WebhookSignatureError):
            _send(_activation(), cfg=cfg)


def test_activation_upgrades_user(fixed_now):
    result = _send(_activation(), now=fixed_now)

    assert result.handled is True
    assert result.user_id == "user_1"
    assert result.plan_id == "week_pass"
    sub = service.get_subscription("user_1")
    assert sub.plan_id == PlanId.WEEK_PASS
    assert sub.credits == 75
    assert sub.membership_id == "mem_1"


def test_activation_uses_provider_expiry(fixed_now):
    event = _activation(plan="plan_h4ga7XhsUpzx9")
    event["data"]["expiration_date"] = 1706745600

    _send(event, now=fixed_now)

    sub = service.get_subscription("user_1")
    assert sub.plan_id == PlanId.PRO_MONTHLY
    assert sub.subscription_end.isoformat() == "2024-02-01T00:00:00+00:00"


def test_duplicate_event_not_reapplied(fixed_now):
    pack = {"id": "evt_pack", "action": "payment_succeeded", "data": {"metadata": {"user_id": "user_1", "credit_pack": 60}}}

    first = _send(pack, now=fixed_now)
    second = _send(pack, now=fixed_now)

    assert first.handled is True
    assert second.duplicate is True
    assert service.get_subscription("user_1").credits == 70

    with get_db_session() as session:
        row = session.execute(select(webhook_events).where(webhook_events.c.event_id == "evt_pack")).one()
    assert row.processed is True
    assert row.event_type == "payment_succeeded"


def test_export_pack_purchase(fixed_now):
    event = {
        "id": "evt_export",
        "action": "payment_succeeded",
        "data": {"metadata": {"user_id": "user_1", "credit_pack": 30, "credit_pack_kind": "export"}},
    }
    _send(event, now=fixed_now)
    assert service.get_subscription("user_1").credits == 40


def test_deactivation_downgrades(fixed_now):
    _send(_activation(), now=fixed_now)

    result = _send({"id": "evt_2", "action": "membership_deactivated", "data": {"id": "mem_1"}}, now=fixed_now)

    assert result.handled is True
    sub = service.get_subscription("user_1")
    assert sub.plan_id == PlanId.FREE
    assert sub.is_active is False
    assert sub.membership_id is None


def test_deactivation_for_unknown_membership():
    result = _send({"id": "evt_3", "action": "membership_deactivated", "data": {"id": "mem_x"}})
    assert result.handled is False


def test_renewal_resolves_user_by_membership(fixed_now):
    _send(_activation(), now=fixed_now)
    renewal = {"id": "evt_4", "action": "payment_succeeded", "data": {"id": "mem_1", "plan_id": "plan_DTNT5Oh5vIuPN"}}

    result = _send(renewal, now=fixed_now)

    assert result.user_id == "user_1"
    assert service.get_subscription("user_1").credits == 75


def test_unknown_action_ignored():
    result = _send({"id": "evt_5", "action": "refund_created", "data": {}})
    assert result.handled is False
    with get_db_session() as session:
        assert session.execute(select(webhook_events)).first() is None


def test_event_id_falls_back_to_body_hash(fixed_now):
    event = _activation()
    del event["id"]
    result = _send(event, now=fixed_now)
    assert len(result.event_id) == 64


@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"data": {}}'])
def test_malformed_payload(body):
    with pytest.raises(ValidationError):
        process_webhook({SIGNATURE_HEADER: compute_signature(SECRET, body)}, body, settings_obj=CFG)


def test_failed_event_is_recorded_and_retried(fixed_now):
    pack = {"id": "evt_retry", "action": "payment_succeeded", "data": {"metadata": {"user_id": "user_1", "credit_pack": 25}}}

    with patch.object(service, "grant_credits", side_effect=RuntimeError("ledger down")):
        with pytest.raises(RuntimeError):
            _send(pack, now=fixed_now)

    with get_db_session() as session:
        row = session.execute(select(webhook_events).where(webhook_events.c.event_id == "evt_retry")).one()
    assert row.processed is False
    assert row.error == "ledger down"

    retried = _send(pack, now=fixed_now)
    assert retried.handled is True
    assert retried.duplicate is False
    assert service.get_subscription("user_1").credits == 35


def test_in_flight_event_not_claimed_twice():
    assert _record_event("evt_inflight", "payment_succeeded", "hash") is True
    assert _record_event("evt_inflight", "payment_succeeded", "hash") is False


def test_failed_event_claimed_by_one_redelivery():
    assert _record_event("evt_failed", "payment_succeeded", "hash") is True
    _mark_event("evt_failed", error="ledger down")

    assert _record_event("evt_failed", "payment_succeeded", "hash") is True
    assert _record_event("evt_failed", "payment_succeeded", "hash") is False
