"""Catalogue API: products and pickup locations."""
from flask import Blueprint, request, jsonify, current_app
from dropshop.database import get_session
from dropshop.schemas import LocationCreateRequest, ProductCreateRequest, parse_request
from dropshop.services.catalog_service import (
    list_products, create_product, list_locations, get_location, create_location,
    update_location, deactivate_location,
)

catalog_bp = Blueprint('catalog', __name__, url_prefix='/api')


def _include_inactive():
    return request.args.get('all', '').lower() in ('1', 'true')


@catalog_bp.route('/products', methods=['GET'])
def get_products():
    """Active products in menu order. ?all=1 includes inactive ones."""
    products = list_products(get_session(), include_inactive=_include_inactive())
    return jsonify([product.to_dict() for product in products])


@catalog_bp.route('/products', methods=['POST'])
def post_product():
    payload = parse_request(ProductCreateRequest, request.get_json(silent=True))
    session = get_session()
    product = create_product(session, payload)
    session.commit()
    return jsonify(product.to_dict()), 201


@catalog_bp.route('/locations', methods=['GET'])
def get_locations():
    locations = list_locations(get_session(), include_inactive=_include_inactive())
    return jsonify([location.to_dict() for location in locations])


@catalog_bp.route('/locations', methods=['POST'])
def post_location():
    payload = parse_request(
        LocationCreateRequest, request.get_json(silent=True), 'Name, code, district and address are required'
    )
    session = get_session()
    location = create_location(session, payload)
    session.commit()
    current_app.logger.info(f"[CATALOG] Location {location.code} added")
    return jsonify(location.to_dict()), 201


@catalog_bp.route('/locations/<int:location_id>', methods=['GET'])
def get_location_detail(location_id):
    return jsonify(get_location(get_session(), location_id).to_dict())


@catalog_bp.route('/locations/<int:location_id>', methods=['PUT'])
def put_location(location_id):
    payload = parse_request(
        LocationCreateRequest, request.get_json(silent=True), 'Name, code, district and address are required'
    )
    session = get_session()
    location = update_location(session, location_id, payload)
    session.commit()
    return jsonify(location.to_dict())


@catalog_bp.route('/locations/<int:location_id>', methods=['DELETE'])
def delete_location(location_id):
    session = get_session()
    deactivate_location(session, location_id)
    session.commit()
    return jsonify({'success': True})
