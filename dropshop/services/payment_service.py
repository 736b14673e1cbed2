"""Stripe gateway used for payment intents and webhook verification."""
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Optional

import stripe
from flask import current_app

from dropshop.exceptions import PaymentGatewayError
from dropshop.schemas.payment import StripeEvent, StripePaymentIntent

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    """Euros to cents, rounded half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class StripeGateway:
    """
    Thin wrapper over the Stripe SDK.

    The API key is passed on every call instead of being set on the stripe
    module, so each app (and each test) owns its own gateway.
    """

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None, currency: str = 'eur'):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_config(cls, config) -> 'StripeGateway':
        return cls(
            secret_key=config.get('STRIPE_SECRET_KEY', ''),
            webhook_secret=config.get('STRIPE_WEBHOOK_SECRET', ''),
            currency=config.get('STRIPE_CURRENCY', 'eur'),
        )

    def _require_key(self):
        if not self.secret_key:
            raise PaymentGatewayError('Stripe is not configured')

    def create_payment_intent(self, amount, metadata: Dict[str, str], description: Optional[str] = None,
                              idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a PaymentIntent for `amount` (major units).

        Returns:
            dict with id, client_secret and amount (minor units)

        Raises:
            PaymentGatewayError: Stripe rejected the request or is unreachable
        """
        self._require_key()
        amount_minor = to_minor_units(amount)
        logger.info(f"[STRIPE] Creating PaymentIntent for {amount_minor} {self.currency}")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount_minor,
                currency=self.currency,
                automatic_payment_methods={'enabled': True},
                metadata=metadata,
                description=description,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.exception(f"[STRIPE] PaymentIntent creation failed: {e}")
            raise PaymentGatewayError('Failed to create payment intent')

        return {'id': intent.id, 'client_secret': intent.client_secret, 'amount': amount_minor}

    def retrieve_payment_intent(self, payment_intent_id: str) -> StripePaymentIntent:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.warning(f"[STRIPE] Could not retrieve {payment_intent_id}: {e}")
            raise PaymentGatewayError('Failed to retrieve payment intent')
        return StripePaymentIntent.model_validate(json.loads(str(intent)))

    def cancel_payment_intent(self, payment_intent_id: str) -> None:
        self._require_key()
        try:
            stripe.PaymentIntent.cancel(payment_intent_id, api_key=self.secret_key)
            logger.info(f"[STRIPE] Cancelled PaymentIntent {payment_intent_id}")
        except stripe.StripeError as e:
            logger.warning(f"[STRIPE] Could not cancel {payment_intent_id}: {e}")
            raise PaymentGatewayError('Failed to cancel payment intent')

    def construct_event(self, payload: bytes, sig_header: str) -> StripeEvent:
        """
        Verify the Stripe-Signature header and parse the event.

        Raises:
            stripe.SignatureVerificationError: bad or stale signature
            ValueError: payload is not valid JSON
        """
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self.webhook_secret)
        # Parse the raw body ourselves: typed envelope, independent of SDK objects
        return StripeEvent.model_validate(json.loads(payload))


def get_gateway() -> StripeGateway:
    return current_app.extensions['stripe_gateway']
