"""Drops API: storefront menu reads and admin drop management."""
from flask import Blueprint, request, jsonify, current_app
from dropshop.database import get_session
from dropshop.exceptions import NotFoundError
from dropshop.models import Location
from dropshop.schemas import (
    DropCreateRequest, DropUpdateRequest, DropMenuUpdateRequest, DropStatusChangeRequest, DeadlineRequest,
    parse_request,
)
from dropshop.services.drop_menu_service import reconcile_drop_menu
from dropshop.services.drop_service import (
    get_drop, get_next_active_drop, serialize_drop_menu, validate_drop_deadline,
    is_drop_orderable, change_drop_status, calculate_pickup_deadline, list_drop_products,
    create_drop, update_drop, delete_drop, summarize_drops, shop_today,
    list_drops, list_future_drops, list_upcoming_drops, list_past_drops,
)

drops_bp = Blueprint('drops', __name__, url_prefix='/api/drops')


def _grace_minutes():
    return current_app.config.get('DROP_GRACE_PERIOD_MINUTES', 15)


def _deadline_settings():
    cfg = current_app.config
    return {
        'tz_name': cfg.get('SHOP_TIMEZONE', 'UTC'),
        'default_end': cfg.get('DEFAULT_PICKUP_HOUR_END', '14:00'),
    }


@drops_bp.route('', methods=['GET'])
def get_drops():
    """All drops by date, with location and stock totals."""
    session = get_session()
    return jsonify(summarize_drops(session, list_drops(session)))


@drops_bp.route('', methods=['POST'])
def post_drop():
    """
    Schedule a drop.

    Body: {date, location_id, status?, notes?, modifiedBy?}
    The drop number and pickup deadline come from the location.
    """
    payload = parse_request(
        DropCreateRequest, request.get_json(silent=True), 'Drop date and location are required'
    )
    session = get_session()

    drop = create_drop(
        session, payload.drop_date, payload.location_id, payload.status,
        notes=payload.notes, modified_by=payload.modified_by, **_deadline_settings(),
    )
    session.commit()
    current_app.logger.info(f"[DROP] Created drop {drop.id} for {drop.date}")
    return jsonify(summarize_drops(session, [drop])[0]), 201


@drops_bp.route('/future', methods=['GET'])
def get_future_drops():
    session = get_session()
    drops = list_future_drops(session, shop_today(_deadline_settings()['tz_name']))
    return jsonify(summarize_drops(session, drops))


@drops_bp.route('/admin/upcoming', methods=['GET'])
def get_admin_upcoming_drops():
    session = get_session()
    drops = list_upcoming_drops(session, shop_today(_deadline_settings()['tz_name']))
    return jsonify(summarize_drops(session, drops, with_orders=True))


@drops_bp.route('/admin/past', methods=['GET'])
def get_admin_past_drops():
    session = get_session()
    drops = list_past_drops(session, shop_today(_deadline_settings()['tz_name']))
    return jsonify(summarize_drops(session, drops, with_orders=True))


@drops_bp.route('/<int:drop_id>', methods=['GET'])
def get_drop_detail(drop_id):
    session = get_session()
    return jsonify(summarize_drops(session, [get_drop(session, drop_id)], with_orders=True)[0])


@drops_bp.route('/<int:drop_id>', methods=['PUT'])
def put_drop(drop_id):
    payload = parse_request(
        DropUpdateRequest, request.get_json(silent=True), 'Drop date and location are required'
    )
    session = get_session()

    drop = update_drop(
        session, drop_id, payload.drop_date, payload.location_id, payload.status,
        notes=payload.notes, modified_by=payload.modified_by, **_deadline_settings(),
    )
    session.commit()
    return jsonify(summarize_drops(session, [drop], with_orders=True)[0])


@drops_bp.route('/<int:drop_id>', methods=['DELETE'])
def remove_drop(drop_id):
    session = get_session()
    delete_drop(session, drop_id)
    session.commit()
    return jsonify({'success': True})


@drops_bp.route('/<int:drop_id>/inventory', methods=['GET'])
def get_drop_inventory(drop_id):
    """Stock ledger of a drop, every product including inactive ones."""
    session = get_session()
    drop = get_drop(session, drop_id)
    return jsonify([dp.to_dict(include_product=True) for dp in list_drop_products(session, drop.id)])


@drops_bp.route('/next-active', methods=['GET'])
def next_active_drop():
    """Next orderable drop with its sellable products, or null."""
    session = get_session()
    drop = get_next_active_drop(session, _grace_minutes())
    if drop is None:
        return jsonify(None)
    return jsonify(serialize_drop_menu(session, drop, _grace_minutes(), active_only=True))


@drops_bp.route('/<int:drop_id>/drop-products', methods=['GET'])
def get_drop_products(drop_id):
    session = get_session()
    drop = get_drop(session, drop_id)
    return jsonify(serialize_drop_menu(session, drop, _grace_minutes()))


@drops_bp.route('/<int:drop_id>/drop-products', methods=['PUT'])
def update_drop_products(drop_id):
    """
    Save the drop's menu.

    Body: {dropProducts: [{product_id, stock_quantity, selling_price}]}
    Rows already referenced by orders are zeroed instead of deleted.
    """
    payload = parse_request(DropMenuUpdateRequest, request.get_json(silent=True))
    session = get_session()

    summary = reconcile_drop_menu(session, drop_id, payload.drop_products)
    session.commit()
    current_app.logger.info(f"[MENU] Drop {drop_id} menu updated: {summary}")

    drop = get_drop(session, drop_id)
    return jsonify({
        'success': True,
        'summary': summary,
        **serialize_drop_menu(session, drop, _grace_minutes()),
    })


@drops_bp.route('/<int:drop_id>/orderable', methods=['GET'])
def drop_orderable(drop_id):
    drop = get_drop(get_session(), drop_id)
    deadline = validate_drop_deadline(drop.pickup_deadline, _grace_minutes())
    return jsonify({
        'orderable': is_drop_orderable(drop, _grace_minutes()),
        'isGracePeriod': deadline['isGracePeriod'],
        'timeRemaining': deadline['timeRemaining'],
    })


@drops_bp.route('/<int:drop_id>/change-status', methods=['PUT'])
def change_status(drop_id):
    payload = parse_request(DropStatusChangeRequest, request.get_json(silent=True))
    session = get_session()

    drop = change_drop_status(session, drop_id, payload.new_status, payload.modified_by, **_deadline_settings())
    session.commit()

    return jsonify({
        'success': True,
        'message': f'Drop status changed to {payload.new_status} successfully',
        'drop': drop.to_dict(),
    })


@drops_bp.route('/calculate-deadline', methods=['POST'])
def calculate_deadline():
    payload = parse_request(DeadlineRequest, request.get_json(silent=True), 'Drop date and location ID are required')
    session = get_session()
    location = session.query(Location).filter(Location.id == payload.location_id).first()
    if not location:
        raise NotFoundError('Location not found')

    deadline = calculate_pickup_deadline(payload.drop_date, location, **_deadline_settings())
    return jsonify({'deadline': deadline.isoformat()})
