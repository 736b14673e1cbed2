"""Orders API: checkout (pay later), lookup and admin status changes."""
from flask import Blueprint, request, jsonify, current_app
from dropshop.exceptions import NotFoundError
from dropshop.schemas import OrderCreateRequest, OrderStatusUpdateRequest, parse_request
from dropshop.services.order_service import get_order_service

orders_bp = Blueprint('orders', __name__, url_prefix='/api/orders')


@orders_bp.route('', methods=['POST'])
def create_order():
    """
    Create a pending order for the next active drop and reserve its items.

    Returns:
        201 {success, order, message}
        400 validation / no active drop / sold out (with `unavailable`)
        500 {error: 'Failed to place order'}
    """
    order_request = parse_request(OrderCreateRequest, request.get_json(silent=True), 'Missing required fields')
    current_app.logger.info(
        f"[ORDER] Checkout for {order_request.customer_email} with {len(order_request.items)} items"
    )

    order = get_order_service().create_order(order_request)

    return jsonify({
        'success': True,
        'order': {
            'id': order.id,
            'order_number': order.order_number,
            'public_code': order.public_code,
            'status': order.status.value,
            'total_amount': str(order.total_amount),
        },
        'message': 'Order created successfully',
    }), 201


@orders_bp.route('/<int:order_id>', methods=['GET'])
def get_order(order_id):
    order = get_order_service().get_order(order_id)
    return jsonify(order.to_dict(include_lines=True))


@orders_bp.route('/<int:order_id>/status', methods=['PUT'])
def update_order_status(order_id):
    payload = parse_request(OrderStatusUpdateRequest, request.get_json(silent=True))
    order = get_order_service().update_order_status(order_id, payload.status)
    return jsonify({'success': True, 'order': order.to_dict()})


@orders_bp.route('/by-payment-intent/<payment_intent_id>', methods=['GET'])
def get_order_by_payment_intent(payment_intent_id):
    """Polled by the confirmation page until the order exists."""
    order = get_order_service().get_order_by_payment_intent(payment_intent_id)
    if order is None:
        raise NotFoundError('Order not found')
    return jsonify({
        'orderId': order.id,
        'orderNumber': order.order_number,
        'publicCode': order.public_code,
        'status': order.status.value,
    })


@orders_bp.route('/by-code/<order_code>', methods=['GET'])
def get_order_by_code(order_code):
    """Pickup counter lookup. The code is sent without its leading '#'."""
    order = get_order_service().get_order_by_code(order_code)
    return jsonify(order.to_dict(include_lines=True))
