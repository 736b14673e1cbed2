"""
Wait for the order of a PaymentIntent to exist.

After Stripe confirms a payment in the browser the order may still be in
flight (webhook fallback). Confirmation pages poll with exponential backoff
through this bounded state machine instead of polling forever.
"""
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Dict, Any

import requests

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    'Order creation is taking longer than expected. '
    'Please contact support if payment was charged.'
)


class PollState(str, enum.Enum):
    WAITING = 'waiting'
    FOUND = 'found'
    TIMED_OUT = 'timed_out'


class OrderPollingTimeout(Exception):
    """Terminal state: the order did not show up within the allowed attempts."""
    def __init__(self, payment_intent_id: str, attempts: int):
        super().__init__(TIMEOUT_MESSAGE)
        self.payment_intent_id = payment_intent_id
        self.attempts = attempts


@dataclass
class PollResult:
    state: PollState
    attempts: int
    order: Optional[Dict[str, Any]] = None


def backoff_delays(max_attempts: int, initial_delay: float, max_delay: float, factor: float = 2.0):
    """Delays slept between attempts: initial, initial*factor, ... capped at max_delay."""
    delay = initial_delay
    for _ in range(max_attempts - 1):
        yield min(delay, max_delay)
        delay *= factor


def wait_for_order(
    fetch: Callable[[str], Optional[Dict[str, Any]]],
    payment_intent_id: str,
    max_attempts: int = 10,
    initial_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """
    Poll `fetch(payment_intent_id)` until it returns an order.

    `fetch` returns the order dict, or None while it does not exist yet.
    Transient fetch errors count as an attempt and polling goes on.

    Raises:
        OrderPollingTimeout: after max_attempts unsuccessful attempts
    """
    if max_attempts < 1:
        raise ValueError('max_attempts must be at least 1')

    delays = backoff_delays(max_attempts, initial_delay, max_delay)
    state = PollState.WAITING
    attempt = 0

    while state == PollState.WAITING:
        attempt += 1
        try:
            order = fetch(payment_intent_id)
        except requests.RequestException as e:
            logger.warning(f"[POLL] Attempt {attempt} for {payment_intent_id} failed: {e}")
            order = None

        if order is not None:
            logger.info(f"[POLL] Order for {payment_intent_id} found after {attempt} attempts")
            return PollResult(PollState.FOUND, attempt, order)

        if attempt >= max_attempts:
            state = PollState.TIMED_OUT
        else:
            sleep(next(delays))

    logger.error(f"[POLL] Timed out waiting for order of {payment_intent_id} after {attempt} attempts")
    raise OrderPollingTimeout(payment_intent_id, attempt)


class ApiOrderFetcher:
    """`fetch` implementation backed by GET /api/orders/by-payment-intent/<id>."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = session or requests.Session()

    def __call__(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        response = self.http.get(
            f"{self.base_url}/api/orders/by-payment-intent/{payment_intent_id}",
            timeout=self.timeout,
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
