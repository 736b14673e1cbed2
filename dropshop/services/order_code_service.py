"""
Order code generation and formatting.

Public codes look like #IH01-001: location code, drop number within the
location (2 digits) and order sequence within the drop (3 digits).
"""
import re
import logging
from typing import NamedTuple, Optional
from sqlalchemy import update, select
from dropshop.models import Drop, Location
from dropshop.exceptions import NotFoundError

logger = logging.getLogger(__name__)

ORDER_CODE_PATTERN = re.compile(r'^([A-Z]{1,4})(\d{2})-(\d{3})$')

_drops = Drop.__table__
_locations = Location.__table__


class OrderCodeComponents(NamedTuple):
    location_code: str
    drop_number: int
    sequence_number: int


def parse_order_code(order_code: str) -> Optional[OrderCodeComponents]:
    """Parse '#IH01-001' (hash optional). Returns None if the code is malformed."""
    match = ORDER_CODE_PATTERN.match((order_code or '').lstrip('#'))
    if not match:
        return None
    return OrderCodeComponents(match.group(1), int(match.group(2)), int(match.group(3)))


def format_order_code(components: OrderCodeComponents, include_hash: bool = True) -> str:
    code = f"{components.location_code}{components.drop_number:02d}-{components.sequence_number:03d}"
    return f"#{code}" if include_hash else code


def format_order_number(drop: Drop, sequence_number: int) -> str:
    """Internal unique order number, e.g. ORD-20250314-7-001."""
    return f"ORD-{drop.date:%Y%m%d}-{drop.id}-{sequence_number:03d}"


def allocate_order_sequence(session, drop_id: int) -> int:
    """
    Hand out the next order sequence of a drop.

    The increment is a single UPDATE, so the row lock serializes
    concurrent allocations and every caller gets a distinct, increasing
    number. The value is read back inside the same transaction.
    """
    result = session.execute(
        update(_drops)
        .where(_drops.c.id == drop_id)
        .values(next_order_sequence=_drops.c.next_order_sequence + 1)
    )
    if result.rowcount != 1:
        raise NotFoundError(f'Drop {drop_id} not found')

    return session.execute(
        select(_drops.c.next_order_sequence).where(_drops.c.id == drop_id)
    ).scalar_one()


def allocate_drop_number(session, location_id: int) -> int:
    """Hand out the next drop number of a location (same pattern as orders)."""
    result = session.execute(
        update(_locations)
        .where(_locations.c.id == location_id)
        .values(next_drop_number=_locations.c.next_drop_number + 1)
    )
    if result.rowcount != 1:
        raise NotFoundError(f'Location {location_id} not found')

    # Counter stores the next free number, we just consumed the previous one
    return session.execute(
        select(_locations.c.next_drop_number).where(_locations.c.id == location_id)
    ).scalar_one() - 1


def generate_order_code(drop: Drop, sequence_number: int) -> str:
    return format_order_code(
        OrderCodeComponents(drop.location.code.upper(), drop.drop_number, sequence_number)
    )
