from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from core.config import settings
from models import StripeEvent, User

logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_PREMIUM = "premium"
STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"

PAID_SESSION_STATUSES = ("paid", "no_payment_required")


class ReconciliationError(RuntimeError):
    """A recognised event could not be applied. The webhook answers 500 so Stripe redelivers."""


class MissingClientReferenceError(ReconciliationError):
    """checkout.session.completed carried no link back to an internal user."""


class UserNotFoundError(ReconciliationError):
    """No user record matches the identifiers on the event."""


class PaymentNotCompletedError(RuntimeError):
    """Checkout session exists but has not been paid."""


class SubscriptionPendingError(RuntimeError):
    """Webhook has not landed yet; the client should poll again."""


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: Optional[str]
    premium_monthly_price_id: Optional[str]
    checkout_success_url: str
    checkout_cancel_url: str
    portal_return_url: str


def _get_stripe_config() -> StripeConfig:
    """
    Load Stripe config from Settings.

    Fail closed: without a secret key no billing endpoint can proceed.
    """
    secret_key = settings.STRIPE_SECRET_KEY
    if not secret_key:
        raise RuntimeError("Stripe not configured (missing: STRIPE_SECRET_KEY)")

    base = settings.WEB_APP_BASE_URL.rstrip("/")
    return StripeConfig(
        secret_key=str(secret_key),
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
        premium_monthly_price_id=settings.STRIPE_PRICE_PREMIUM_MONTHLY_ID or None,
        checkout_success_url=settings.STRIPE_CHECKOUT_SUCCESS_URL
        or f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        checkout_cancel_url=settings.STRIPE_CHECKOUT_CANCEL_URL or f"{base}/payment-cancelled",
        portal_return_url=settings.STRIPE_PORTAL_RETURN_URL or f"{base}/dashboard/coach/settings",
    )


def _field(obj: Any, key: str) -> Any:
    """Read a field from a StripeObject, a plain dict, or a test double."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    # Expanded objects carry their id.
    if not isinstance(value, str):
        value = _field(value, "id")
    return str(value) if value else None


class StripeService:
    def __init__(self) -> None:
        cfg = _get_stripe_config()
        stripe.api_key = cfg.secret_key
        self.cfg = cfg

    def create_checkout_session(self, *, user: User) -> tuple[str, str]:
        """Hosted checkout for the premium subscription. Returns (session_id, url)."""
        if not self.cfg.premium_monthly_price_id:
            raise RuntimeError("Stripe not configured (missing: STRIPE_PRICE_PREMIUM_MONTHLY_ID)")

        params: dict[str, Any] = {
            "mode": "subscription",
            "success_url": self.cfg.checkout_success_url,
            "cancel_url": self.cfg.checkout_cancel_url,
            "line_items": [{"price": self.cfg.premium_monthly_price_id, "quantity": 1}],
            "client_reference_id": str(user.id),
            "metadata": {"user_id": str(user.id)},
        }
        if user.stripe_customer_id:
            params["customer"] = user.stripe_customer_id
        elif user.email:
            params["customer_email"] = user.email

        session = stripe.checkout.Session.create(**params)
        return str(session.id), str(session.url)

    def create_portal_session(self, *, user: User) -> str:
        if not user.stripe_customer_id:
            raise ValueError("Stripe Customer ID not found for this user.")
        sess = stripe.billing_portal.Session.create(
            customer=str(user.stripe_customer_id),
            return_url=self.cfg.portal_return_url,
        )
        return str(sess.url)

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return stripe.checkout.Session.retrieve(session_id)

    def construct_event(self, *, payload: bytes, sig_header: str):
        if not self.cfg.webhook_secret:
            raise RuntimeError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self.cfg.webhook_secret,
        )


def _extract_current_period_end_ts(obj: Any) -> Optional[int]:
    """
    Stripe API compatibility:
    - Older API versions: `subscription.current_period_end` (top-level)
    - Newer API versions: on `subscription.items.data[*].current_period_end`
    """
    ts = _field(obj, "current_period_end")
    if ts is not None:
        return int(ts)

    items = _field(obj, "items")
    ends = [
        int(_field(item, "current_period_end"))
        for item in (_field(items, "data") or [])
        if _field(item, "current_period_end") is not None
    ]
    return max(ends) if ends else None


def derive_cancel_at_period_end(obj: Any) -> bool:
    """
    True when the subscription is scheduled to lapse at the end of the period.

    Legacy payloads set `cancel_at_period_end`; newer ones set `cancel_at`
    equal to the period end instead.
    """
    if bool(_field(obj, "cancel_at_period_end")):
        return True

    cancel_at = _field(obj, "cancel_at")
    if cancel_at is None:
        return False
    period_end = _extract_current_period_end_ts(obj)
    if period_end is None:
        return True
    return int(cancel_at) == int(period_end)


def _find_user_by_customer_or_subscription(
    db: Session, *, customer_id: Optional[str], subscription_id: Optional[str]
) -> Optional[User]:
    if customer_id:
        user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            return user
    if subscription_id:
        return db.query(User).filter(User.stripe_subscription_id == subscription_id).first()
    return None


def _apply_state(user: User, *, tier: str, status: str) -> None:
    user.subscription_tier = tier
    user.subscription_status = status


def _is_stale_subscription(user: User, subscription_id: Optional[str]) -> bool:
    """The event is about a subscription other than the one stored on the user."""
    return bool(user.stripe_subscription_id and subscription_id and user.stripe_subscription_id != subscription_id)


def _ignore_stale(user: User, subscription_id: Optional[str]) -> dict[str, Any]:
    logger.info(
        f"Ignoring event for subscription {subscription_id}; user {user.id} is on {user.stripe_subscription_id}"
    )
    return {"handled": False, "reason": "stale_subscription", "user_id": user.id}


def handle_checkout_completed(db: Session, session_obj: Any) -> dict[str, Any]:
    """(any) -> (premium, active) for subscription-mode checkouts."""
    mode = _field(session_obj, "mode")
    if mode != "subscription":
        logger.info(f"Checkout session {_field(session_obj, 'id')} is mode={mode}; skipping")
        return {"handled": False, "reason": "not_subscription_mode"}

    metadata = _field(session_obj, "metadata") or {}
    user_id = _str_or_none(_field(session_obj, "client_reference_id")) or _str_or_none(_field(metadata, "user_id"))
    if not user_id:
        raise MissingClientReferenceError("client_reference_id is missing in session")

    user = db.get(User, user_id)
    if not user:
        raise UserNotFoundError(f"No user found for client_reference_id {user_id}")

    customer_id = _str_or_none(_field(session_obj, "customer"))
    subscription_id = _str_or_none(_field(session_obj, "subscription"))
    if customer_id:
        user.stripe_customer_id = customer_id
    if subscription_id:
        user.stripe_subscription_id = subscription_id
    _apply_state(user, tier=TIER_PREMIUM, status=STATUS_ACTIVE)
    db.add(user)
    return {"handled": True, "user_id": user.id, "tier": user.subscription_tier, "status": user.subscription_status}


def handle_subscription_updated(db: Session, subscription_obj: Any) -> dict[str, Any]:
    """cancel at period end -> (premium, cancelled); otherwise -> (premium, active)."""
    customer_id = _str_or_none(_field(subscription_obj, "customer"))
    subscription_id = _str_or_none(_field(subscription_obj, "id"))
    user = _find_user_by_customer_or_subscription(db, customer_id=customer_id, subscription_id=subscription_id)
    if not user:
        raise UserNotFoundError(f"No user found for customer {customer_id} / subscription {subscription_id}")

    if _is_stale_subscription(user, subscription_id):
        return _ignore_stale(user, subscription_id)

    status = STATUS_CANCELLED if derive_cancel_at_period_end(subscription_obj) else STATUS_ACTIVE
    if subscription_id:
        user.stripe_subscription_id = subscription_id
    _apply_state(user, tier=TIER_PREMIUM, status=status)
    db.add(user)
    return {"handled": True, "user_id": user.id, "tier": user.subscription_tier, "status": user.subscription_status}


def handle_subscription_deleted(db: Session, subscription_obj: Any) -> dict[str, Any]:
    """(any) -> (free, cancelled)."""
    customer_id = _str_or_none(_field(subscription_obj, "customer"))
    subscription_id = _str_or_none(_field(subscription_obj, "id"))
    user = _find_user_by_customer_or_subscription(db, customer_id=customer_id, subscription_id=subscription_id)
    if not user:
        raise UserNotFoundError(f"No user found for customer {customer_id} / subscription {subscription_id}")

    if _is_stale_subscription(user, subscription_id):
        return _ignore_stale(user, subscription_id)

    _apply_state(user, tier=TIER_FREE, status=STATUS_CANCELLED)
    db.add(user)
    return {"handled": True, "user_id": user.id, "tier": user.subscription_tier, "status": user.subscription_status}


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def process_stripe_event(db: Session, *, event: Any) -> dict[str, Any]:
    """
    Apply one verified webhook event to the stored subscription state.

    The event id is recorded in the same transaction as the transition, so a
    redelivered event is acknowledged without reapplying and a failed one is
    not recorded. ReconciliationError propagates after rollback.
    """
    event_id = str(_field(event, "id") or "")
    event_type = str(_field(event, "type") or "")
    stripe_created = _field(event, "created")

    if event_id and db.get(StripeEvent, event_id) is not None:
        logger.info(f"Stripe event {event_id} already processed")
        return {"processed": False, "idempotent": True, "event_id": event_id, "event_type": event_type}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignoring unhandled Stripe event type {event_type}")
        return {"processed": False, "handled": False, "event_id": event_id, "event_type": event_type}

    obj = _field(_field(event, "data"), "object")
    try:
        result = handler(db, obj)
        if event_id:
            db.add(StripeEvent(
                event_id=event_id,
                event_type=event_type,
                stripe_created=int(stripe_created) if stripe_created else None,
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Stripe event {event_id} ({event_type}) applied",
        extra={"extra_fields": {"event_id": event_id, "event_type": event_type, **result}},
    )
    return {"processed": True, "event_id": event_id, "event_type": event_type, **result}


def verify_checkout_session(db: Session, *, session_obj: Any, requester: Optional[User] = None) -> User:
    """
    Poll path: read-only check that the webhook has already activated the
    user behind ``session_obj``.

    Raises:
        PaymentNotCompletedError: session not paid
        MissingClientReferenceError: session carries no user reference
        PermissionError: requester is authenticated as a different user
        UserNotFoundError: referenced user record is absent
        SubscriptionPendingError: stored state is not (premium, active) yet
    """
    payment_status = _field(session_obj, "payment_status")
    if payment_status not in PAID_SESSION_STATUSES:
        raise PaymentNotCompletedError(f"Checkout session payment_status is {payment_status}")

    metadata = _field(session_obj, "metadata") or {}
    user_id = _str_or_none(_field(session_obj, "client_reference_id")) or _str_or_none(_field(metadata, "user_id"))
    if not user_id:
        raise MissingClientReferenceError("User ID not found in session")

    if requester is not None and requester.id != user_id:
        raise PermissionError("Checkout session belongs to another user")

    user = db.get(User, user_id)
    if not user:
        raise UserNotFoundError(f"User {user_id} not found")

    # Re-read; the webhook may have committed since this session loaded the row.
    db.refresh(user)
    if not user.is_premium_active:
        raise SubscriptionPendingError(f"User {user_id} is ({user.subscription_tier}, {user.subscription_status})")
    return user

