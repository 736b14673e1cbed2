"""
Webhooks Blueprint for Stripe notifications.

Handles payment_intent.succeeded and payment_intent.payment_failed. Every
other event type is acknowledged and ignored.
"""
import logging

import stripe
from flask import Blueprint, request, jsonify, current_app

from dropshop.database import get_session
from dropshop.services.order_service import get_order_service
from dropshop.services.payment_service import get_gateway
from dropshop.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')


@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    """
    Verify and process a Stripe event.

    Returns 400 for unsigned or tampered payloads, 500 when processing
    failed (Stripe redelivers), 200 otherwise, including redeliveries of
    events that were already handled.
    """
    signature = request.headers.get('Stripe-Signature')
    if not signature:
        logger.warning("[WEBHOOK] Missing Stripe-Signature header")
        return jsonify({'error': 'Missing signature'}), 400

    if not current_app.config.get('STRIPE_WEBHOOK_SECRET'):
        logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET is not configured")
        return jsonify({'error': 'Webhook secret not configured'}), 500

    try:
        event = get_gateway().construct_event(request.get_data(), signature)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"[WEBHOOK] Invalid signature: {e}")
        return jsonify({'error': 'Invalid signature'}), 400
    except ValueError as e:
        logger.warning(f"[WEBHOOK] Invalid payload: {e}")
        return jsonify({'error': 'Invalid payload'}), 400

    logger.info(f"[WEBHOOK] Received {event.type} ({event.id})")

    try:
        result = WebhookService(get_session(), get_order_service()).handle_event(event)
    except Exception:
        # Already logged and recorded as FAILED by the service
        return jsonify({'error': 'Webhook handler failed'}), 500

    return jsonify({'received': True, 'status': result})
