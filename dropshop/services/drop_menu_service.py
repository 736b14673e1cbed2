"""
Drop menu editor - reconcile a drop's drop_products with the admin's list.

A row that any order line points to is never deleted: removing it from the
menu sets its stock to 0 so the product stops selling while historical
orders keep their reference.
"""
import logging
from typing import List, Dict

from sqlalchemy import update, delete, exists, and_

from dropshop.models import DropProduct, OrderProduct, Order, Product
from dropshop.exceptions import ValidationError
from dropshop.schemas.drop_product import DropMenuItem
from dropshop.services.drop_service import get_drop

logger = logging.getLogger(__name__)

_ledger = DropProduct.__table__
_order_lines = OrderProduct.__table__


def _drop_has_commitments(session, drop_id: int) -> bool:
    """Orders exist for the drop, or some stock is held by an order in flight."""
    has_orders = session.query(exists().where(Order.drop_id == drop_id)).scalar()
    if has_orders:
        return True
    return session.query(
        exists().where(and_(DropProduct.drop_id == drop_id, DropProduct.reserved_quantity > 0))
    ).scalar()


def reconcile_drop_menu(session, drop_id: int, desired: List[DropMenuItem]) -> Dict[str, List[int]]:
    """
    Apply the desired menu to a drop.

    Without orders the menu is replaced wholesale. With orders, kept products
    are updated in place, removed ones deleted when unreferenced or zeroed
    otherwise, and new ones inserted. Caller commits.

    Returns:
        {created, updated, deleted, zeroed} lists of product ids

    Raises:
        NotFoundError: unknown drop
        ValidationError: unknown products, or stock below what is reserved;
            nothing is changed in that case
    """
    drop = get_drop(session, drop_id)
    summary = {'created': [], 'updated': [], 'deleted': [], 'zeroed': []}

    product_ids = [item.product_id for item in desired]
    known = {pid for (pid,) in session.query(Product.id).filter(Product.id.in_(product_ids)).all()} if product_ids else set()
    unknown = [pid for pid in product_ids if pid not in known]
    if unknown:
        raise ValidationError('Unknown products in menu', details=[f'product {pid} not found' for pid in unknown])

    with session.begin_nested():
        if not _drop_has_commitments(session, drop.id):
            removed = []
            for row in session.query(DropProduct).filter(DropProduct.drop_id == drop.id).all():
                removed.append(row.product_id)
                session.delete(row)
            # Deletes must reach the database before the unique (drop, product) inserts
            session.flush()
            for item in desired:
                _insert(session, drop.id, item)
            summary['created'] = product_ids
            summary['deleted'] = [pid for pid in removed if pid not in set(product_ids)]
        else:
            _reconcile_in_place(session, drop.id, desired, summary)

    session.expire_all()
    logger.info(
        f"[MENU] Drop {drop.id} menu saved: created={summary['created']} updated={summary['updated']} "
        f"deleted={summary['deleted']} zeroed={summary['zeroed']}"
    )
    return summary


def _reconcile_in_place(session, drop_id: int, desired: List[DropMenuItem], summary: Dict[str, List[int]]):
    # Ascending id, the same order reserve_multiple locks rows in
    rows = (
        session.query(DropProduct)
        .filter(DropProduct.drop_id == drop_id)
        .order_by(DropProduct.id)
        .all()
    )
    existing = {row.product_id: row for row in rows}
    wanted = {item.product_id: item for item in desired}
    too_low = []

    for row in rows:
        item = wanted.get(row.product_id)
        if item is None:
            _retire(session, row, summary)
            continue

        # Stock may not drop below what orders already hold
        result = session.execute(
            update(_ledger)
            .where(_ledger.c.id == row.id)
            .where(_ledger.c.reserved_quantity <= item.stock_quantity)
            .values(stock_quantity=item.stock_quantity, selling_price=item.selling_price)
        )
        if result.rowcount != 1:
            too_low.append(row.product_id)
        else:
            summary['updated'].append(row.product_id)

    if too_low:
        raise ValidationError(
            'Stock cannot be lower than the quantity already reserved',
            details=[
                f'product {pid}: reserved {existing[pid].reserved_quantity}, requested stock {wanted[pid].stock_quantity}'
                for pid in too_low
            ],
        )

    for item in desired:
        if item.product_id not in existing:
            _insert(session, drop_id, item)
            summary['created'].append(item.product_id)


def _retire(session, row: DropProduct, summary: Dict[str, List[int]]):
    """Delete a row dropped from the menu, or zero its stock when orders point to it."""
    result = session.execute(
        delete(_ledger)
        .where(_ledger.c.id == row.id)
        .where(_ledger.c.reserved_quantity == 0)
        .where(~exists().where(_order_lines.c.drop_product_id == row.id))
    )
    if result.rowcount == 1:
        session.expunge(row)
        summary['deleted'].append(row.product_id)
    else:
        session.execute(update(_ledger).where(_ledger.c.id == row.id).values(stock_quantity=0))
        summary['zeroed'].append(row.product_id)


def _insert(session, drop_id: int, item: DropMenuItem):
    session.add(DropProduct(
        drop_id=drop_id,
        product_id=item.product_id,
        stock_quantity=item.stock_quantity,
        reserved_quantity=0,
        selling_price=item.selling_price,
    ))
    session.flush()
