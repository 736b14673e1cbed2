"""
Drop service - ordering window, lifecycle, admin management and menu reads.

Deadlines are stored as timezone-aware timestamps. Backends that hand
back naive values (SQLite) are read as UTC.
"""
import logging
from datetime import datetime, date, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.orm import joinedload

from dropshop.models import Drop, DropStatus, DropProduct, Location, Order, OrderStatus, TERMINAL_DROP_STATUSES
from dropshop.exceptions import BusinessLogicError, NotFoundError, NoActiveDropError, ValidationError
from dropshop.services.order_code_service import allocate_drop_number

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_MINUTES = 15


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_remaining(delta: timedelta) -> Optional[str]:
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


def validate_drop_deadline(pickup_deadline: Optional[datetime],
                           grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
                           now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Check a pickup deadline against the clock, including the grace period.

    Returns:
        dict with isValid, isGracePeriod, timeRemaining ("2h 5m", "12m" or
        None) and isExpired. A drop without deadline is never orderable.
    """
    if pickup_deadline is None:
        return {'isValid': False, 'isGracePeriod': False, 'timeRemaining': None, 'isExpired': True}

    now = as_utc(now) or datetime.now(timezone.utc)
    deadline = as_utc(pickup_deadline)
    grace_deadline = deadline + timedelta(minutes=grace_period_minutes)

    is_valid = now <= grace_deadline
    is_grace_period = deadline < now <= grace_deadline
    time_remaining = None
    if is_valid:
        target = grace_deadline if is_grace_period else deadline
        time_remaining = _format_remaining(target - now)

    return {
        'isValid': is_valid,
        'isGracePeriod': is_grace_period,
        'timeRemaining': time_remaining,
        'isExpired': not is_valid,
    }


def is_drop_orderable(drop: Optional[Drop],
                      grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
                      now: Optional[datetime] = None) -> bool:
    if drop is None or drop.status != DropStatus.ACTIVE:
        return False
    return validate_drop_deadline(drop.pickup_deadline, grace_period_minutes, now)['isValid']


def get_drop(session, drop_id: int) -> Drop:
    drop = session.query(Drop).options(joinedload(Drop.location)).filter(Drop.id == drop_id).first()
    if not drop:
        raise NotFoundError(f'Drop {drop_id} not found')
    return drop


def get_next_active_drop(session,
                         grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
                         now: Optional[datetime] = None) -> Optional[Drop]:
    """
    Earliest active drop still accepting orders (deadline plus grace not
    passed). Returns None when nothing is orderable.
    """
    candidates = (
        session.query(Drop)
        .options(joinedload(Drop.location))
        .filter(Drop.status == DropStatus.ACTIVE, Drop.pickup_deadline.isnot(None))
        .order_by(Drop.date.asc(), Drop.pickup_deadline.asc(), Drop.id.asc())
        .all()
    )
    # Deadline filter in Python: stored values may be naive on some backends
    for drop in candidates:
        if validate_drop_deadline(drop.pickup_deadline, grace_period_minutes, now)['isValid']:
            return drop
    return None


def require_orderable_drop(session, drop_id: Optional[int] = None,
                           grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES) -> Drop:
    """
    Resolve the drop an order goes to.

    Raises:
        NoActiveDropError: no explicit drop given and none active, or the
            given drop is not orderable
        NotFoundError: explicit drop_id does not exist
    """
    if drop_id is None:
        drop = get_next_active_drop(session, grace_period_minutes)
        if drop is None:
            raise NoActiveDropError()
        return drop

    drop = get_drop(session, drop_id)
    if not is_drop_orderable(drop, grace_period_minutes):
        logger.info(f"[DROP] Drop {drop_id} is not orderable (status={drop.status.value})")
        raise NoActiveDropError()
    return drop


def calculate_pickup_deadline(drop_date: date, location: Location,
                              tz_name: str = 'UTC', default_end: str = '14:00') -> datetime:
    """Deadline of a drop: its date at the location's pickup end hour, in the shop timezone."""
    end = location.pickup_hour_end if location is not None else None
    if end is None:
        end = time.fromisoformat(default_end)
    local = datetime.combine(drop_date, end).replace(tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def change_drop_status(session, drop_id: int, new_status: str, modified_by: Optional[str] = None,
                       tz_name: str = 'UTC', default_end: str = '14:00') -> Drop:
    """
    Move a drop to `new_status` and stamp status_changed_at.

    Activating a drop without deadline computes one from its location.
    Caller commits.
    """
    try:
        status = DropStatus(new_status)
    except ValueError:
        raise ValidationError('Invalid status. Must be one of: upcoming, active, completed, cancelled')

    drop = get_drop(session, drop_id)
    previous = drop.status
    drop.status = status
    drop.status_changed_at = datetime.now(timezone.utc)
    drop.last_modified_by = modified_by

    if status == DropStatus.ACTIVE and drop.pickup_deadline is None:
        drop.pickup_deadline = calculate_pickup_deadline(drop.date, drop.location, tz_name, default_end)

    session.flush()
    logger.info(f"[DROP] Drop {drop.id} status {previous.value} -> {status.value} by {modified_by or 'system'}")
    return drop


def list_drop_products(session, drop_id: int, active_only: bool = False) -> List[DropProduct]:
    query = (
        session.query(DropProduct)
        .options(joinedload(DropProduct.product))
        .filter(DropProduct.drop_id == drop_id)
    )
    rows = query.all()
    if active_only:
        rows = [dp for dp in rows if dp.product is not None and dp.product.active]
    return sorted(rows, key=lambda dp: ((dp.product.sort_order if dp.product else 0), dp.id))


def serialize_drop_menu(session, drop: Drop, grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
                        active_only: bool = False) -> Dict[str, Any]:
    """Drop, its location and products with live availability."""
    deadline = validate_drop_deadline(drop.pickup_deadline, grace_period_minutes)
    data = drop.to_dict()
    data['location'] = drop.location.to_dict() if drop.location else None
    data['time_until_deadline'] = deadline['timeRemaining']
    data['is_terminal'] = drop.status in TERMINAL_DROP_STATUSES
    return {
        'drop': data,
        'products': [
            dp.to_dict(include_product=True)
            for dp in list_drop_products(session, drop.id, active_only=active_only)
        ],
    }


# =====================================================
# MANAGEMENT
# =====================================================

def shop_today(tz_name: str = 'UTC') -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def _active_location(session, location_id: int) -> Location:
    location = session.query(Location).filter(Location.id == location_id).first()
    if location is None or not location.active:
        raise ValidationError('Invalid or inactive location')
    return location


def _order_count(session, drop_id: int) -> int:
    return session.query(func.count(Order.id)).filter(Order.drop_id == drop_id).scalar()


def create_drop(session, drop_date: date, location_id: int, status: DropStatus = DropStatus.UPCOMING,
                notes: Optional[str] = None, modified_by: Optional[str] = None,
                tz_name: str = 'UTC', default_end: str = '14:00') -> Drop:
    """
    Schedule a drop at an active location.

    The drop takes the location's next drop number and its deadline is
    computed from the location's pickup hours. Caller commits.
    """
    location = _active_location(session, location_id)
    drop = Drop(
        date=drop_date,
        location=location,
        drop_number=allocate_drop_number(session, location.id),
        status=status,
        pickup_deadline=calculate_pickup_deadline(drop_date, location, tz_name, default_end),
        status_changed_at=datetime.now(timezone.utc),
        last_modified_by=modified_by,
        notes=notes,
    )
    session.add(drop)
    session.flush()
    logger.info(f"[DROP] Drop {drop.id} scheduled at {location.code} #{drop.drop_number} on {drop_date}")
    return drop


def update_drop(session, drop_id: int, drop_date: date, location_id: int,
                status: Optional[DropStatus] = None, notes: Optional[str] = None,
                modified_by: Optional[str] = None, tz_name: str = 'UTC', default_end: str = '14:00') -> Drop:
    """
    Edit date, location, notes and optionally status of a drop.

    A new date or location recomputes the deadline. A drop with orders
    cannot change location because its public codes carry the location
    code and drop number. Caller commits.
    """
    drop = get_drop(session, drop_id)
    moved = drop.date != drop_date or drop.location_id != location_id

    if drop.location_id != location_id:
        if _order_count(session, drop.id):
            raise BusinessLogicError('Cannot move a drop that already has orders to another location')
        location = _active_location(session, location_id)
        drop.location = location
        drop.drop_number = allocate_drop_number(session, location.id)

    drop.date = drop_date
    drop.notes = notes
    drop.last_modified_by = modified_by
    if moved:
        drop.pickup_deadline = calculate_pickup_deadline(drop_date, drop.location, tz_name, default_end)

    if status is not None and status != drop.status:
        change_drop_status(session, drop.id, status.value, modified_by, tz_name, default_end)
    session.flush()
    return drop


def delete_drop(session, drop_id: int) -> None:
    """
    Delete a drop and its menu. Drops with orders are refused, cancel them
    instead. Caller commits.
    """
    drop = get_drop(session, drop_id)
    orders = _order_count(session, drop.id)
    if orders:
        raise BusinessLogicError(f'Cannot delete a drop with {orders} orders. Cancel it instead.')

    session.query(DropProduct).filter(DropProduct.drop_id == drop.id).delete(synchronize_session='fetch')
    session.delete(drop)
    session.flush()
    logger.info(f"[DROP] Drop {drop_id} deleted")


def _stock_totals(session, drop_ids: List[int]) -> Dict[int, Dict[str, int]]:
    rows = (
        session.query(
            DropProduct.drop_id,
            func.sum(DropProduct.stock_quantity),
            func.sum(DropProduct.reserved_quantity),
            func.sum(DropProduct.available_quantity),
        )
        .filter(DropProduct.drop_id.in_(drop_ids))
        .group_by(DropProduct.drop_id)
        .all()
    )
    return {
        drop_id: {'total_stock': int(stock), 'total_reserved': int(reserved), 'total_available': int(available)}
        for drop_id, stock, reserved, available in rows
    }


def _order_totals(session, drop_ids: List[int]) -> Dict[int, Dict[str, Any]]:
    rows = (
        session.query(Order.drop_id, func.count(Order.id), func.sum(Order.total_amount))
        .filter(Order.drop_id.in_(drop_ids), Order.status != OrderStatus.CANCELLED)
        .group_by(Order.drop_id)
        .all()
    )
    return {
        drop_id: {'order_count': count, 'revenue': f"{Decimal(str(revenue or 0)):.2f}"}
        for drop_id, count, revenue in rows
    }


def summarize_drops(session, drops: List[Drop], with_orders: bool = False) -> List[Dict[str, Any]]:
    """Drop dicts with their location and stock totals (plus order totals for admin views)."""
    drop_ids = [drop.id for drop in drops]
    empty_stock = {'total_stock': 0, 'total_reserved': 0, 'total_available': 0}
    stock = _stock_totals(session, drop_ids) if drop_ids else {}
    orders = _order_totals(session, drop_ids) if with_orders and drop_ids else {}

    result = []
    for drop in drops:
        data = drop.to_dict()
        data['location'] = drop.location.to_dict() if drop.location else None
        data.update(stock.get(drop.id, empty_stock))
        if with_orders:
            data.update(orders.get(drop.id, {'order_count': 0, 'revenue': '0.00'}))
        result.append(data)
    return result


def _drops_query(session):
    return session.query(Drop).options(joinedload(Drop.location))


def list_drops(session) -> List[Drop]:
    return _drops_query(session).order_by(Drop.date.asc(), Drop.id.asc()).all()


def list_future_drops(session, today: date) -> List[Drop]:
    return _drops_query(session).filter(Drop.date >= today).order_by(Drop.date.asc(), Drop.id.asc()).all()


def list_upcoming_drops(session, today: date) -> List[Drop]:
    """Admin view: drops still to happen, soonest first."""
    return (
        _drops_query(session)
        .filter(Drop.date >= today, Drop.status.notin_(TERMINAL_DROP_STATUSES))
        .order_by(Drop.date.asc(), Drop.id.asc())
        .all()
    )


def list_past_drops(session, today: date) -> List[Drop]:
    """Admin view: drops already held or closed, latest first."""
    return (
        _drops_query(session)
        .filter((Drop.date < today) | Drop.status.in_(TERMINAL_DROP_STATUSES))
        .order_by(Drop.date.desc(), Drop.id.desc())
        .all()
    )
