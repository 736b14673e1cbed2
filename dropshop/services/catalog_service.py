"""
Catalogue service - products and pickup locations.

Locations are never hard deleted: drops and order codes refer to them.
"""
import logging
from typing import List

from dropshop.models import Drop, Location, Product
from dropshop.exceptions import BusinessLogicError, NotFoundError, ValidationError
from dropshop.schemas import LocationCreateRequest, ProductCreateRequest

logger = logging.getLogger(__name__)


def list_products(session, include_inactive: bool = False) -> List[Product]:
    query = session.query(Product)
    if not include_inactive:
        query = query.filter(Product.active.is_(True))
    return query.order_by(Product.sort_order.asc(), Product.id.asc()).all()


def create_product(session, payload: ProductCreateRequest) -> Product:
    product = Product(**payload.model_dump())
    session.add(product)
    session.flush()
    logger.info(f"[CATALOG] Product {product.id} '{product.name}' created")
    return product


def list_locations(session, include_inactive: bool = False) -> List[Location]:
    query = session.query(Location)
    if not include_inactive:
        query = query.filter(Location.active.is_(True))
    return query.order_by(Location.name.asc()).all()


def get_location(session, location_id: int) -> Location:
    location = session.query(Location).filter(Location.id == location_id).first()
    if not location:
        raise NotFoundError('Location not found')
    return location


def _ensure_code_free(session, code: str, location_id=None):
    query = session.query(Location.id).filter(Location.code == code)
    if location_id is not None:
        query = query.filter(Location.id != location_id)
    if query.first():
        raise ValidationError(f'Location code {code} is already in use')


def create_location(session, payload: LocationCreateRequest) -> Location:
    _ensure_code_free(session, payload.code)
    location = Location(**payload.model_dump())
    session.add(location)
    session.flush()
    logger.info(f"[CATALOG] Location {location.id} ({location.code}) created")
    return location


def update_location(session, location_id: int, payload: LocationCreateRequest) -> Location:
    """Replace a location's fields. Codes already printed on orders keep the old prefix."""
    location = get_location(session, location_id)
    _ensure_code_free(session, payload.code, location.id)
    for field, value in payload.model_dump().items():
        setattr(location, field, value)
    session.flush()
    return location


def deactivate_location(session, location_id: int) -> Location:
    """
    Soft delete. A location that already hosted drops is refused, it can
    still be hidden with PUT active=false.
    """
    location = get_location(session, location_id)
    if session.query(Drop.id).filter(Drop.location_id == location.id).first():
        raise BusinessLogicError('Cannot delete location that has associated drops')

    location.active = False
    session.flush()
    logger.info(f"[CATALOG] Location {location.id} ({location.code}) deactivated")
    return location
