"""
Billing: checkout/portal session creation and webhook reconciliation.

Stripe API calls are replaced by monkeypatching StripeService; one test
signs a payload with the real stripe library to cover verification.
"""
import hashlib
import hmac
import json
import time

import pytest

from models import StripeEvent, User
from services import stripe_service as ss


def _dummy_config(**overrides):
    values = dict(
        secret_key="sk_test_dummy",
        webhook_secret="whsec_dummy",
        premium_monthly_price_id="price_dummy",
        checkout_success_url="http://localhost:3000/payment-success?session_id={CHECKOUT_SESSION_ID}",
        checkout_cancel_url="http://localhost:3000/payment-cancelled",
        portal_return_url="http://localhost:3000/dashboard/coach/settings",
    )
    values.update(overrides)
    return ss.StripeConfig(**values)


class _DummyEvent:
    def __init__(self, event_id: str, event_type: str, obj):
        self.id = event_id
        self.type = event_type
        self.created = 123

        class _Data:
            def __init__(self, o):
                self.object = o

        self.data = _Data(obj)


class _DummySession:
    def __init__(self, *, client_reference_id="u1", customer="cus_1", subscription="sub_1", mode="subscription", payment_status="paid", metadata=None):
        self.id = "cs_test_1"
        self.client_reference_id = client_reference_id
        self.customer = customer
        self.subscription = subscription
        self.mode = mode
        self.payment_status = payment_status
        self.metadata = metadata or {}


class _DummySubObj:
    def __init__(self, *, customer="cus_1", subscription_id="sub_1", cancel_at_period_end=False, cancel_at=None):
        self.customer = customer
        self.id = subscription_id
        self.status = "active"
        # Newer Stripe API versions place billing period fields on subscription items.
        self.cancel_at_period_end = cancel_at_period_end
        self.cancel_at = cancel_at
        item = type("item", (), {"current_period_end": 1234567890})()
        self.items = type("items", (), {"data": [item]})


@pytest.fixture
def stripe_configured(monkeypatch):
    monkeypatch.setattr(ss, "_get_stripe_config", lambda: _dummy_config())


@pytest.fixture
def deliver(client, monkeypatch, stripe_configured):
    """Post one webhook delivery whose verified event is ``event``."""
    def _deliver(event):
        monkeypatch.setattr(ss.StripeService, "construct_event", lambda self, *, payload, sig_header: event)
        return client.post("/api/stripe-webhook", content=b"{}", headers={"Stripe-Signature": "sig"})

    return _deliver


def test_checkout_session_for_coach(client, monkeypatch, stripe_configured, make_user, headers):
    coach = make_user("c1", role="coach", email="coach@example.com")
    seen = {}

    def _create(self, *, user):
        seen["user_id"] = user.id
        return "cs_test_1", "https://stripe.test/checkout"

    monkeypatch.setattr(ss.StripeService, "create_checkout_session", _create)

    resp = client.post("/api/create-checkout-session", headers=headers(coach))

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://stripe.test/checkout", "sessionId": "cs_test_1"}
    assert seen["user_id"] == "c1"


def test_checkout_session_requires_coach_role(client, stripe_configured, make_user, headers):
    user = make_user("u1", role="user")

    resp = client.post("/api/create-checkout-session", headers=headers(user))

    assert resp.status_code == 403


def test_checkout_session_unconfigured_is_503(client, make_user, headers):
    coach = make_user("c1", role="coach")

    resp = client.post("/api/create-checkout-session", headers=headers(coach))

    assert resp.status_code == 503


def test_manage_billing(client, monkeypatch, stripe_configured, make_user, headers):
    no_customer = make_user("u1", role="coach")
    resp = client.post("/api/manage-billing", headers=headers(no_customer))
    assert resp.status_code == 400

    customer = make_user("u2", role="coach", stripe_customer_id="cus_2")
    monkeypatch.setattr(ss.StripeService, "create_portal_session", lambda self, *, user: "https://stripe.test/portal")
    resp = client.post("/api/manage-billing", headers=headers(customer))
    assert resp.status_code == 200
    assert resp.json()["url"] == "https://stripe.test/portal"


def test_webhook_requires_signature_header(client):
    resp = client.post("/api/stripe-webhook", content=b"{}")
    assert resp.status_code == 400


def test_webhook_bad_signature_is_400(client, monkeypatch, stripe_configured):
    def _reject(self, *, payload, sig_header):
        raise ValueError("No signatures found matching the expected signature for payload")

    monkeypatch.setattr(ss.StripeService, "construct_event", _reject)

    resp = client.post("/api/stripe-webhook", content=b"{}", headers={"Stripe-Signature": "sig"})

    assert resp.status_code == 400


def test_webhook_without_secret_is_500(client, monkeypatch):
    monkeypatch.setattr(ss, "_get_stripe_config", lambda: _dummy_config(webhook_secret=None))

    resp = client.post("/api/stripe-webhook", content=b"{}", headers={"Stripe-Signature": "sig"})

    assert resp.status_code == 500


def test_checkout_completed_activates_premium(deliver, db_session, make_user):
    user = make_user("u1", role="coach")

    resp = deliver(_DummyEvent("evt_1", "checkout.session.completed", _DummySession()))

    assert resp.status_code == 200
    assert resp.json()["received"] is True
    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("premium", "active")
    assert user.stripe_customer_id == "cus_1"
    assert user.stripe_subscription_id == "sub_1"


def test_checkout_completed_uses_metadata_fallback(deliver, db_session, make_user):
    user = make_user("u1", role="coach")

    session = _DummySession(client_reference_id=None, metadata={"user_id": "u1"})
    assert deliver(_DummyEvent("evt_1", "checkout.session.completed", session)).status_code == 200

    db_session.refresh(user)
    assert user.is_premium_active


def test_checkout_completed_non_subscription_mode_is_ignored(deliver, db_session, make_user):
    user = make_user("u1", role="coach")

    resp = deliver(_DummyEvent("evt_1", "checkout.session.completed", _DummySession(mode="payment")))

    assert resp.status_code == 200
    db_session.refresh(user)
    assert user.subscription_tier == "free"


def test_checkout_completed_without_reference_is_500(deliver, db_session, make_user):
    make_user("u1", role="coach")

    resp = deliver(_DummyEvent("evt_1", "checkout.session.completed", _DummySession(client_reference_id=None)))

    assert resp.status_code == 500
    # Not recorded, so Stripe's redelivery will be processed.
    assert db_session.get(StripeEvent, "evt_1") is None


def test_checkout_completed_unknown_user_is_500(deliver, make_user):
    resp = deliver(_DummyEvent("evt_1", "checkout.session.completed", _DummySession(client_reference_id="ghost")))
    assert resp.status_code == 500


def test_subscription_updated_cancel_at_period_end(deliver, db_session, make_user):
    user = make_user("u1", role="coach", stripe_customer_id="cus_1", subscription_tier="premium", subscription_status="active")

    resp = deliver(_DummyEvent("evt_2", "customer.subscription.updated", _DummySubObj(cancel_at_period_end=True)))

    assert resp.status_code == 200
    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("premium", "cancelled")


def test_subscription_updated_cancel_at_equal_to_period_end(deliver, db_session, make_user):
    user = make_user("u1", role="coach", stripe_customer_id="cus_1", subscription_tier="premium", subscription_status="active")

    deliver(_DummyEvent("evt_2", "customer.subscription.updated", _DummySubObj(cancel_at=1234567890)))

    db_session.refresh(user)
    assert user.subscription_status == "cancelled"


def test_subscription_updated_resumed_is_active(deliver, db_session, make_user):
    user = make_user("u1", role="coach", stripe_subscription_id="sub_1", subscription_tier="premium", subscription_status="cancelled")

    # Matched by subscription id when the customer id is unknown.
    deliver(_DummyEvent("evt_3", "customer.subscription.updated", _DummySubObj(customer="cus_other")))

    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("premium", "active")


def test_subscription_deleted_for_stale_subscription_is_ignored(deliver, db_session, make_user):
    user = make_user(
        "u3", role="coach", stripe_customer_id="cus_1", stripe_subscription_id="sub_new",
        subscription_tier="premium", subscription_status="active",
    )

    resp = deliver(_DummyEvent("evt_old_1", "customer.subscription.deleted", _DummySubObj(subscription_id="sub_old")))

    assert resp.status_code == 200
    assert resp.json()["result"]["reason"] == "stale_subscription"
    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("premium", "active")
    assert user.stripe_subscription_id == "sub_new"


def test_subscription_updated_for_stale_subscription_is_ignored(deliver, db_session, make_user):
    user = make_user(
        "u3", role="coach", stripe_customer_id="cus_1", stripe_subscription_id="sub_new",
        subscription_tier="premium", subscription_status="active",
    )

    event = _DummyEvent(
        "evt_old_2", "customer.subscription.updated",
        _DummySubObj(subscription_id="sub_old", cancel_at_period_end=True),
    )
    resp = deliver(event)

    assert resp.status_code == 200
    assert resp.json()["result"]["handled"] is False
    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("premium", "active")
    assert user.stripe_subscription_id == "sub_new"


def test_subscription_updated_unknown_customer_is_500(deliver, make_user):
    resp = deliver(_DummyEvent("evt_4", "customer.subscription.updated", _DummySubObj(customer="cus_x", subscription_id="sub_x")))
    assert resp.status_code == 500


def test_subscription_deleted_is_idempotent(deliver, db_session, make_user):
    user = make_user("u1", role="coach", stripe_customer_id="cus_1", subscription_tier="premium", subscription_status="active")

    assert deliver(_DummyEvent("evt_5", "customer.subscription.deleted", _DummySubObj())).status_code == 200
    # Same transition from a distinct event id lands on the same state.
    assert deliver(_DummyEvent("evt_6", "customer.subscription.deleted", _DummySubObj())).status_code == 200

    db_session.refresh(user)
    assert (user.subscription_tier, user.subscription_status) == ("free", "cancelled")


def test_duplicate_event_is_not_reapplied(deliver, db_session, make_user):
    user = make_user("u1", role="coach", stripe_customer_id="cus_1")

    first = deliver(_DummyEvent("evt_7", "customer.subscription.deleted", _DummySubObj()))
    assert first.json()["result"]["processed"] is True

    # Manual change between deliveries must survive the redelivery.
    user.subscription_tier = "premium"
    user.subscription_status = "active"
    db_session.commit()

    second = deliver(_DummyEvent("evt_7", "customer.subscription.deleted", _DummySubObj()))
    assert second.status_code == 200
    assert second.json()["result"]["idempotent"] is True

    db_session.refresh(user)
    assert user.subscription_tier == "premium"
    assert db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_7").count() == 1


def test_unhandled_event_type_is_acknowledged(deliver):
    resp = deliver(_DummyEvent("evt_8", "invoice.paid", {}))

    assert resp.status_code == 200
    assert resp.json()["result"]["handled"] is False


def test_signed_payload_verified_by_stripe(client, db_session, monkeypatch, make_user):
    monkeypatch.setattr(ss, "_get_stripe_config", lambda: _dummy_config(webhook_secret="whsec_test_secret"))
    user = make_user("u1", role="coach")

    payload = json.dumps({
        "id": "evt_signed",
        "object": "event",
        "type": "checkout.session.completed",
        "created": 1700000000,
        "data": {"object": {
            "id": "cs_signed",
            "object": "checkout.session",
            "mode": "subscription",
            "client_reference_id": "u1",
            "customer": "cus_signed",
            "subscription": "sub_signed",
            "payment_status": "paid",
        }},
    })
    timestamp = int(time.time())
    signature = hmac.new(b"whsec_test_secret", f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()

    resp = client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"},
    )

    assert resp.status_code == 200
    db_session.refresh(user)
    assert user.is_premium_active
    assert user.stripe_customer_id == "cus_signed"

    forged = client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": f"t={timestamp},v1={'0' * 64}"},
    )
    assert forged.status_code == 400


@pytest.mark.parametrize("sub,expected", [
    (_DummySubObj(cancel_at_period_end=True), True),
    (_DummySubObj(cancel_at=1234567890), True),
    (_DummySubObj(cancel_at=1111111111), False),
    (_DummySubObj(), False),
    ({"cancel_at": 5, "current_period_end": 5}, True),
])
def test_derive_cancel_at_period_end(sub, expected):
    assert ss.derive_cancel_at_period_end(sub) is expected


def test_user_model_premium_flag():
    assert User(subscription_tier="premium", subscription_status="active").is_premium_active
    assert not User(subscription_tier="premium", subscription_status="cancelled").is_premium_active
