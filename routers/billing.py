from __future__ import annotations

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_current_user, get_current_user_optional, require_role
from core.database import get_db
from core.exceptions import (
    BadRequestError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    PaymentRequiredError,
    ConflictError,
    ServiceUnavailableError,
)
from models import User
from schemas import CheckoutSessionResponse, PaymentSuccessRequest
from services.stripe_service import (
    MissingClientReferenceError,
    PaymentNotCompletedError,
    ReconciliationError,
    StripeService,
    SubscriptionPendingError,
    UserNotFoundError,
    process_stripe_event,
    verify_checkout_session,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(current_user: User = Depends(require_role(["coach", "admin"]))):
    """
    Create a Stripe Checkout Session for the premium plan.
    The session's client_reference_id links it back to this user.
    """
    try:
        session_id, url = StripeService().create_checkout_session(user=current_user)
    except RuntimeError as e:
        raise ServiceUnavailableError(str(e))
    except stripe.StripeError:
        logger.error(f"Checkout session creation failed for {current_user.id}", exc_info=True)
        raise InternalError("Failed to create checkout session")
    return CheckoutSessionResponse(url=url, session_id=session_id)


@router.post("/manage-billing")
def manage_billing(current_user: User = Depends(get_current_user)):
    """Create a Stripe Customer Portal session. Returns a hosted URL."""
    try:
        url = StripeService().create_portal_session(user=current_user)
    except ValueError as e:
        raise BadRequestError(str(e))
    except RuntimeError as e:
        raise ServiceUnavailableError(str(e))
    except stripe.StripeError:
        logger.error(f"Portal session creation failed for {current_user.id}", exc_info=True)
        raise InternalError("Failed to create billing session.")
    return {"url": url}


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Stripe webhook endpoint.

    4xx only for a missing or forged signature (Stripe does not redeliver
    those). Configuration faults and failed transitions answer 500 so the
    delivery is retried.
    """
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise BadRequestError("Missing Stripe-Signature header")

    payload = await request.body()
    try:
        svc = StripeService()
        event = svc.construct_event(payload=payload, sig_header=sig)
    except RuntimeError as e:
        logger.error(f"Stripe webhook misconfigured: {e}")
        return JSONResponse(status_code=500, content={"detail": "Webhook secret is not configured.", "error_code": "INTERNAL_ERROR"})
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise BadRequestError("Invalid webhook signature")

    try:
        result = process_stripe_event(db, event=event)
    except ReconciliationError as e:
        logger.error(
            f"Webhook handler failed: {e}",
            extra={"extra_fields": {"event_id": getattr(event, "id", None), "event_type": getattr(event, "type", None)}},
        )
        return JSONResponse(status_code=500, content={"detail": "Webhook handler failed.", "error_code": "INTERNAL_ERROR"})

    return {"received": True, "result": result}


@router.post("/handle-payment-success")
def handle_payment_success(
    request: PaymentSuccessRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """
    Post-checkout confirmation (poll path).

    Read-only: the webhook is the only writer of subscription state. Until
    it has landed this answers 409 and the client polls again.
    """
    if not request.session_id:
        raise BadRequestError("Session ID is required", field="sessionId")

    try:
        session_obj = StripeService().retrieve_checkout_session(request.session_id)
    except RuntimeError as e:
        raise ServiceUnavailableError(str(e))
    except stripe.InvalidRequestError:
        raise NotFoundError("Checkout session", request.session_id)
    except stripe.StripeError:
        logger.error(f"Checkout session lookup failed for {request.session_id}", exc_info=True)
        raise InternalError("Failed to verify payment success.")

    try:
        user = verify_checkout_session(db, session_obj=session_obj, requester=current_user)
    except PaymentNotCompletedError:
        raise PaymentRequiredError("Payment not completed for this session.")
    except MissingClientReferenceError:
        raise BadRequestError("User ID not found in session")
    except PermissionError:
        raise ForbiddenError("This checkout session belongs to another account.")
    except UserNotFoundError:
        raise NotFoundError("User", str(getattr(session_obj, "client_reference_id", None) or "unknown"))
    except SubscriptionPendingError:
        raise ConflictError("Subscription not active yet. Please wait a moment and try again.")

    return {"success": True, "message": "Subscription verified.", "userId": user.id}
