"""
Post-checkout confirmation: read-only, 409 until the webhook has landed.
"""
import pytest
import stripe

from services import stripe_service as ss


class _Session:
    def __init__(self, *, client_reference_id="u1", payment_status="paid", metadata=None):
        self.id = "cs_test_1"
        self.client_reference_id = client_reference_id
        self.payment_status = payment_status
        self.metadata = metadata or {}


@pytest.fixture
def session_lookup(monkeypatch):
    monkeypatch.setattr(
        ss,
        "_get_stripe_config",
        lambda: ss.StripeConfig(
            secret_key="sk_test_dummy",
            webhook_secret="whsec_dummy",
            premium_monthly_price_id="price_dummy",
            checkout_success_url="http://localhost:3000/payment-success",
            checkout_cancel_url="http://localhost:3000/payment-cancelled",
            portal_return_url="http://localhost:3000/settings",
        ),
    )

    def _set(session):
        def _retrieve(self, session_id):
            if isinstance(session, Exception):
                raise session
            return session

        monkeypatch.setattr(ss.StripeService, "retrieve_checkout_session", _retrieve)

    return _set


def _confirm(client, session_id="cs_test_1", headers=None):
    return client.post("/api/handle-payment-success", json={"sessionId": session_id}, headers=headers or {})


def test_missing_session_id(client):
    resp = client.post("/api/handle-payment-success", json={})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Session ID is required"


def test_pending_until_webhook_lands(client, db_session, session_lookup, make_user):
    user = make_user("u1", role="coach")
    session_lookup(_Session())

    resp = _confirm(client)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Subscription not active yet. Please wait a moment and try again."

    # Poll path never writes state.
    db_session.refresh(user)
    assert user.subscription_tier == "free"

    user.subscription_tier = "premium"
    user.subscription_status = "active"
    db_session.commit()

    resp = _confirm(client)
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_cancelled_premium_is_still_pending(client, session_lookup, make_user):
    make_user("u1", role="coach", subscription_tier="premium", subscription_status="cancelled")
    session_lookup(_Session())

    assert _confirm(client).status_code == 409


def test_unpaid_session_is_402(client, session_lookup, make_user):
    make_user("u1", role="coach")
    session_lookup(_Session(payment_status="unpaid"))

    assert _confirm(client).status_code == 402


def test_session_without_user_reference_is_400(client, session_lookup):
    session_lookup(_Session(client_reference_id=None))

    resp = _confirm(client)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "User ID not found in session"


def test_unknown_user_is_404(client, session_lookup):
    session_lookup(_Session(client_reference_id="ghost"))

    assert _confirm(client).status_code == 404


def test_unknown_session_is_404(client, session_lookup):
    session_lookup(stripe.InvalidRequestError("No such checkout.session: cs_missing", "id"))

    assert _confirm(client, "cs_missing").status_code == 404


def test_other_users_session_is_403(client, session_lookup, make_user, headers):
    make_user("u1", role="coach", subscription_tier="premium", subscription_status="active")
    intruder = make_user("u2", role="coach")
    session_lookup(_Session(client_reference_id="u1"))

    assert _confirm(client, headers=headers(intruder)).status_code == 403


def test_unconfigured_stripe_is_503(client, make_user):
    make_user("u1", role="coach")

    assert _confirm(client).status_code == 503
