"""
Client side of the post-checkout confirmation.

After Stripe redirects back, the payment-success page polls
``/api/handle-payment-success`` until the webhook has activated the
subscription. 409 means "not yet"; anything else is final.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Optional

import requests

from core.config import settings

logger = logging.getLogger(__name__)

PENDING_STATUS = 409


@dataclass
class PollOutcome:
    confirmed: bool
    attempts: int
    status_code: Optional[int] = None
    detail: Optional[str] = None


def _detail(resp: requests.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or None
    if isinstance(body, dict):
        return body.get("detail") or body.get("message")
    return None


def poll_payment_confirmation(
    base_url: str,
    session_id: str,
    *,
    token: Optional[str] = None,
    attempts: Optional[int] = None,
    interval_s: Optional[float] = None,
    http: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    timeout_s: float = 10.0,
) -> PollOutcome:
    """
    Poll until the subscription is confirmed, a final error comes back, or
    the attempts run out.

    Retries on 409 and on transport errors. No wait follows the last attempt.
    A session created here is closed before returning; a caller-supplied
    ``http`` is left open.
    """
    attempts = attempts if attempts is not None else settings.PAYMENT_POLL_ATTEMPTS
    interval_s = interval_s if interval_s is not None else settings.PAYMENT_POLL_INTERVAL_S
    url = f"{base_url.rstrip('/')}/api/handle-payment-success"
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    if http is None:
        with requests.Session() as owned:
            return _poll(owned, url, session_id, headers, attempts, interval_s, sleep, timeout_s)
    return _poll(http, url, session_id, headers, attempts, interval_s, sleep, timeout_s)


def _poll(http, url, session_id, headers, attempts, interval_s, sleep, timeout_s) -> PollOutcome:
    last_status: Optional[int] = None
    last_detail: Optional[str] = None
    for attempt in range(1, attempts + 1):
        try:
            resp = http.post(url, json={"sessionId": session_id}, headers=headers, timeout=timeout_s)
        except requests.RequestException as e:
            logger.warning(f"Payment confirmation attempt {attempt}/{attempts} failed: {e}")
            last_status, last_detail = None, str(e)
        else:
            last_status, last_detail = resp.status_code, _detail(resp)
            if resp.status_code == 200:
                return PollOutcome(confirmed=True, attempts=attempt, status_code=200, detail=last_detail)
            if resp.status_code != PENDING_STATUS:
                logger.warning(f"Payment confirmation rejected with {resp.status_code}: {last_detail}")
                return PollOutcome(confirmed=False, attempts=attempt, status_code=resp.status_code, detail=last_detail)

        if attempt < attempts:
            sleep(interval_s)

    logger.info(f"Payment for session {session_id} still pending after {attempts} attempts")
    return PollOutcome(confirmed=False, attempts=attempts, status_code=last_status, detail=last_detail)
