"""Payments API: availability check and PaymentIntent checkout."""
from flask import Blueprint, request, jsonify, current_app
from pydantic import ValidationError as PydanticValidationError

from dropshop.database import get_session
from dropshop.exceptions import DropShopError, InsufficientInventoryError, ValidationError, PaymentGatewayError
from dropshop.schemas import (
    AvailabilityCheckRequest, CreateIntentRequest, OrderCreateRequest, PaymentIntentMetadata, parse_request,
)
from dropshop.services.inventory_service import check_multiple_availability
from dropshop.services.order_service import get_order_service
from dropshop.services.payment_service import get_gateway

payments_bp = Blueprint('payments', __name__, url_prefix='/api/payment')


@payments_bp.route('/check-availability', methods=['POST'])
def check_availability():
    """
    Read-only stock check before the customer confirms payment.

    Accepts {paymentIntentId} (cart read from the intent metadata) or
    {items}. Returns {available: true} or 400 with the sold-out message.
    """
    payload = parse_request(AvailabilityCheckRequest, request.get_json(silent=True))
    session = get_session()

    if payload.payment_intent_id:
        # Stock is already held when the order was created at checkout
        if get_order_service().get_order_by_payment_intent(payload.payment_intent_id) is not None:
            return jsonify({'available': True})
        intent = get_gateway().retrieve_payment_intent(payload.payment_intent_id)
        try:
            items = PaymentIntentMetadata.model_validate(intent.metadata).cart_items
        except PydanticValidationError:
            raise ValidationError('Payment intent has no cart information')
    else:
        items = payload.items

    shortages = check_multiple_availability(session, [item.to_reservation_item() for item in items])
    session.rollback()
    if shortages:
        raise InsufficientInventoryError(shortages)
    return jsonify({'available': True})


@payments_bp.route('/create-intent', methods=['POST'])
def create_payment_intent():
    """
    Create a Stripe PaymentIntent and the pending order it pays for.

    The order reserves its stock right away. If the order cannot be
    created the PaymentIntent is cancelled so it can never be charged.
    """
    payload = parse_request(CreateIntentRequest, request.get_json(silent=True))
    order_request = OrderCreateRequest.from_customer_info(payload.customer_info, payload.items)
    service = get_order_service()
    gateway = get_gateway()

    drop_id, total = service.quote_order(order_request, payload.drop_id)
    shortages = check_multiple_availability(service.session, order_request.reservation_items)
    service.session.rollback()
    if shortages:
        raise InsufficientInventoryError(shortages)

    metadata = PaymentIntentMetadata(
        customer_name=order_request.customer_name,
        customer_email=order_request.customer_email,
        customer_phone=order_request.customer_phone,
        pickup_time=order_request.pickup_time,
        pickup_date=order_request.pickup_date.isoformat(),
        special_instructions=order_request.special_instructions,
        total_amount=total,
        drop_id=drop_id,
        cart_items=payload.items,
    )
    intent = gateway.create_payment_intent(total, metadata.to_stripe(), description=f'Drop {drop_id} pre-order')

    try:
        order = service.create_order(order_request, payment_intent_id=intent['id'], drop_id=drop_id)
    except DropShopError:
        try:
            gateway.cancel_payment_intent(intent['id'])
        except PaymentGatewayError:
            current_app.logger.error(f"[PAYMENT] Order failed and PaymentIntent {intent['id']} could not be cancelled")
        raise

    current_app.logger.info(f"[PAYMENT] PaymentIntent {intent['id']} created for order {order.public_code}")
    return jsonify({
        'clientSecret': intent['client_secret'],
        'paymentIntentId': intent['id'],
        'orderId': order.id,
        'orderNumber': order.order_number,
        'publicCode': order.public_code,
        'amount': intent['amount'],
    })
