"""
Inventory reservation and release for the drop stock ledger.

Every change to drop_products.reserved_quantity goes through this module.
Check-and-increment is a single conditional UPDATE per row, so two
requests racing for the last unit cannot both win: the database re-checks
the WHERE clause after taking the row lock and the loser sees 0 affected
rows. Batches run inside a SAVEPOINT so a cart is reserved entirely or not
at all.

Callers own the surrounding transaction and decide when to commit.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Dict, Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update, func, case

from dropshop.models import DropProduct, Order, OrderProduct
from dropshop.exceptions import ValidationError, InsufficientInventoryError
from dropshop.schemas.order import ReservationItem, merge_reservation_items
from dropshop.services.metrics_service import inventory_reservations_total, inventory_releases_total

logger = logging.getLogger(__name__)

_ledger = DropProduct.__table__
_orders = Order.__table__


def normalize_items(items: Iterable) -> List[ReservationItem]:
    """Validate and merge a batch. Raises ValidationError, never touches the DB."""
    items = list(items or [])
    if not items:
        raise ValidationError('At least one item is required')
    try:
        return merge_reservation_items(items)
    except (PydanticValidationError, TypeError, ValueError) as e:
        raise ValidationError('Invalid reservation item', details=[str(e)])


def reserve_multiple(session, items: Iterable) -> List[ReservationItem]:
    """
    Reserve every item of the batch or none of them.

    Args:
        session: SQLAlchemy session (transaction left open for the caller)
        items: ReservationItems or (drop_product_id, quantity) pairs

    Returns:
        The merged batch that was reserved.

    Raises:
        ValidationError: empty batch or non-positive quantities
        InsufficientInventoryError: at least one line cannot be covered;
            no reserved_quantity was changed
    """
    batch = normalize_items(items)
    shortages = []

    try:
        with session.begin_nested():
            for item in batch:
                result = session.execute(
                    update(_ledger)
                    .where(_ledger.c.id == item.drop_product_id)
                    .where(_ledger.c.stock_quantity - _ledger.c.reserved_quantity >= item.quantity)
                    .values(
                        reserved_quantity=_ledger.c.reserved_quantity + item.quantity,
                        updated_at=func.now(),
                    )
                )
                if result.rowcount != 1:
                    shortages.append(item)

            if shortages:
                raise InsufficientInventoryError(_describe_shortages(session, shortages))
    except InsufficientInventoryError as e:
        inventory_reservations_total.labels(outcome='insufficient').inc()
        logger.info(f"[INVENTORY] Reservation rejected, nothing reserved: {e.shortages}")
        raise

    _expire_ledger_rows(session, [item.drop_product_id for item in batch])
    inventory_reservations_total.labels(outcome='reserved').inc()
    logger.info(
        "[INVENTORY] Reserved "
        + ', '.join(f"{item.drop_product_id}x{item.quantity}" for item in batch)
    )
    return batch


def release_multiple(session, items: Iterable, reason: str = 'manual') -> Dict[str, Any]:
    """
    Return reserved units to the ledger, floored at zero.

    Never raises for domain reasons: an empty batch is a no-op, unknown rows
    are skipped and a release larger than the current reservation clamps
    reserved_quantity to 0. Both cases are logged because they mean the
    ledger and the orders disagree.

    Returns:
        dict with `released` (units), `floored` and `missing` drop_product ids
    """
    summary = {'released': 0, 'floored': [], 'missing': []}
    try:
        batch = normalize_items(items)
    except ValidationError:
        logger.warning(f"[INVENTORY] Ignoring invalid release batch ({reason}): {items!r}")
        return summary

    for item in batch:
        result = session.execute(
            update(_ledger)
            .where(_ledger.c.id == item.drop_product_id)
            .where(_ledger.c.reserved_quantity >= item.quantity)
            .values(
                reserved_quantity=_ledger.c.reserved_quantity - item.quantity,
                updated_at=func.now(),
            )
        )
        if result.rowcount == 1:
            summary['released'] += item.quantity
            continue

        # Not enough reserved: clamp to zero in one statement
        result = session.execute(
            update(_ledger)
            .where(_ledger.c.id == item.drop_product_id)
            .values(
                reserved_quantity=case(
                    (_ledger.c.reserved_quantity > item.quantity,
                     _ledger.c.reserved_quantity - item.quantity),
                    else_=0,
                ),
                updated_at=func.now(),
            )
        )
        if result.rowcount == 1:
            summary['floored'].append(item.drop_product_id)
            logger.warning(
                f"[INVENTORY] Release of {item.quantity} on drop_product {item.drop_product_id} "
                f"exceeded its reservation ({reason}); floored at 0"
            )
        else:
            summary['missing'].append(item.drop_product_id)
            logger.warning(f"[INVENTORY] Release skipped, drop_product {item.drop_product_id} not found ({reason})")

    _expire_ledger_rows(session, [item.drop_product_id for item in batch])
    inventory_releases_total.labels(reason=reason).inc()
    logger.info(f"[INVENTORY] Released {summary['released']} units ({reason})")
    return summary


def release_order_inventory(session, order: Order, reason: str) -> bool:
    """
    Release everything an order holds, at most once per order.

    The release marker is flipped with a conditional UPDATE, so concurrent
    or repeated callers (webhook redelivery, double cancel, stale sweeper)
    cannot return the same units twice.

    Returns:
        True if this call released the order's units, False if they were
        already released before.
    """
    result = session.execute(
        update(_orders)
        .where(_orders.c.id == order.id)
        .where(_orders.c.inventory_released_at.is_(None))
        .values(inventory_released_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        logger.info(f"[INVENTORY] Order {order.id} already released, skipping ({reason})")
        return False

    lines = session.query(OrderProduct).filter(OrderProduct.order_id == order.id).all()
    items = [(line.drop_product_id, line.order_quantity) for line in lines]
    if items:
        release_multiple(session, items, reason=reason)
    session.expire(order, ['inventory_released_at'])
    logger.info(f"[INVENTORY] Order {order.id} released {len(items)} lines ({reason})")
    return True


def check_multiple_availability(session, items: Iterable) -> List[Dict[str, Any]]:
    """
    Read-only availability check. Returns the shortages (empty when the
    whole batch is currently available). Nothing is held: a later
    reserve_multiple may still fail.
    """
    batch = normalize_items(items)
    return _describe_shortages(session, batch, only_short=True)


def get_ledger_drift(session, drop_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Compare reserved_quantity with the order lines that still hold stock.

    Returns one entry per drop product whose counters disagree:
    {drop_product_id, reserved_quantity, expected_reserved, difference}.
    """
    held = (
        session.query(
            OrderProduct.drop_product_id.label('drop_product_id'),
            func.sum(OrderProduct.order_quantity).label('held'),
        )
        .join(Order, Order.id == OrderProduct.order_id)
        .filter(Order.inventory_released_at.is_(None))
        .group_by(OrderProduct.drop_product_id)
        .subquery()
    )
    query = (
        session.query(DropProduct, func.coalesce(held.c.held, 0))
        .outerjoin(held, held.c.drop_product_id == DropProduct.id)
    )
    if drop_id is not None:
        query = query.filter(DropProduct.drop_id == drop_id)

    drift = []
    for drop_product, expected in query.order_by(DropProduct.id).all():
        expected = int(expected)
        if drop_product.reserved_quantity != expected:
            drift.append({
                'drop_product_id': drop_product.id,
                'drop_id': drop_product.drop_id,
                'reserved_quantity': drop_product.reserved_quantity,
                'expected_reserved': expected,
                'difference': drop_product.reserved_quantity - expected,
            })
    return drift


def repair_ledger_drift(session, drift: List[Dict[str, Any]]) -> Dict[str, List[int]]:
    """
    Bring the ledger back in line with the orders through the engines.
    Phantom holds are released, missing holds reserved again when stock
    allows. Order rows are never touched.
    """
    repaired, unresolved = [], []
    for entry in drift:
        difference = entry['difference']
        drop_product_id = entry['drop_product_id']
        if difference > 0:
            release_multiple(session, [(drop_product_id, difference)], reason='ledger_repair')
            repaired.append(drop_product_id)
        elif difference < 0:
            try:
                reserve_multiple(session, [(drop_product_id, -difference)])
                repaired.append(drop_product_id)
            except InsufficientInventoryError:
                unresolved.append(drop_product_id)
    return {'repaired': repaired, 'unresolved': unresolved}


# =====================================================
# PRIVATE HELPERS
# =====================================================

def _describe_shortages(session, items: List[ReservationItem], only_short: bool = False) -> List[Dict[str, Any]]:
    ids = [item.drop_product_id for item in items]
    rows = {
        dp.id: dp
        for dp in session.query(DropProduct).filter(DropProduct.id.in_(ids)).populate_existing().all()
    }
    shortages = []
    for item in items:
        row = rows.get(item.drop_product_id)
        available = row.available_quantity if row is not None else 0
        if only_short and available >= item.quantity:
            continue
        entry = {
            'drop_product_id': item.drop_product_id,
            'requested': item.quantity,
            'available': available,
        }
        if row is None:
            entry['reason'] = 'not_found'
        shortages.append(entry)
    return shortages


def _expire_ledger_rows(session, drop_product_ids):
    """Drop cached counters of rows we changed with Core UPDATEs."""
    ids = set(drop_product_ids)
    for obj in list(session.identity_map.values()):
        if isinstance(obj, DropProduct) and obj.id in ids:
            session.expire(obj, ['reserved_quantity', 'updated_at'])
