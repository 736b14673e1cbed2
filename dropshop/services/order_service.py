"""
Order service - order creation and lifecycle.

Creating an order is one database transaction: resolve the drop, upsert the
client, allocate the sequence, reserve the cart, then insert the order and
its lines inside a SAVEPOINT. Insufficient stock aborts before anything is
written. If the insert fails, the savepoint is rolled back and the
reservation is released again in the same transaction (compensation)
before committing. The ledger therefore never shows a committed hold
without the order that owns it, and the ledger audit only ever sees
consistent state.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Tuple

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from dropshop.database import get_session
from dropshop.models import (
    Order, OrderProduct, OrderStatus, PaymentMethod, DropProduct, Drop, DropStatus, AlertKind,
)
from dropshop.exceptions import (
    DropShopError, ValidationError, NotFoundError, InvalidStatusTransitionError,
    OrderCreationError, OrderNumberCollisionError, PaymentGatewayError,
)
from dropshop.schemas.order import OrderCreateRequest, ReservationItem
from dropshop.services import inventory_service
from dropshop.services.alert_service import raise_admin_alert
from dropshop.services.client_service import get_or_create_client
from dropshop.services.drop_service import require_orderable_drop, get_drop, as_utc
from dropshop.services.email_service import send_order_confirmation_email, send_order_status_update_email
from dropshop.services.metrics_service import orders_created_total
from dropshop.services.order_code_service import (
    allocate_order_sequence, generate_order_code, format_order_number, parse_order_code, format_order_code,
)

logger = logging.getLogger(__name__)

TOTAL_TOLERANCE = Decimal('0.01')

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARED, OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.PREPARED: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

# Statuses the customer hears about by email
NOTIFIED_STATUSES = {OrderStatus.CONFIRMED, OrderStatus.PREPARED, OrderStatus.COMPLETED}

_orders = Order.__table__


class OrderService:
    """Order orchestration on top of an injected session."""

    def __init__(self, session, grace_period_minutes: int = 15, send_emails: bool = True, gateway=None):
        self.session = session
        self.grace_period_minutes = grace_period_minutes
        self.send_emails = send_emails
        self.gateway = gateway

    # =====================================================
    # CREATION
    # =====================================================

    def create_order(self, request: OrderCreateRequest, payment_intent_id: Optional[str] = None,
                     drop_id: Optional[int] = None, status: OrderStatus = OrderStatus.PENDING,
                     enforce_deadline: bool = True) -> Order:
        """
        Turn a cart into a persisted order holding its inventory.

        Args:
            request: validated order request
            payment_intent_id: Stripe PaymentIntent paying for this order
            drop_id: explicit drop (payment flows); None picks the next active drop
            status: initial status (pending, or confirmed for paid webhook fallback)
            enforce_deadline: False when payment already happened and the
                drop only has to exist and not be cancelled

        Returns:
            The committed Order.

        Raises:
            NoActiveDropError: no orderable drop
            ValidationError: items not on the drop's menu
            InsufficientInventoryError: cart cannot be covered, nothing written
            OrderCreationError: persistence failed, reservation compensated
        """
        session = self.session
        items = request.reservation_items
        flow = 'stripe' if payment_intent_id else 'pay_later'

        try:
            drop = self._resolve_drop(drop_id, enforce_deadline)
            menu = self._load_menu_lines(drop, items)
            total = self._compute_total(menu, items, request.total_amount)
            client = get_or_create_client(
                session, request.customer_email, request.customer_name, request.customer_phone
            )
            sequence_number = allocate_order_sequence(session, drop.id)
            inventory_service.reserve_multiple(session, items)
            client_id, drop_id = client.id, drop.id
        except DropShopError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.exception(f"[ORDER] Order preparation failed: {e}")
            raise OrderCreationError()

        # The reservation is still uncommitted, it only commits with the order rows
        try:
            with session.begin_nested():
                order = self._persist_order(
                    request=request,
                    drop_id=drop_id,
                    client_id=client_id,
                    sequence_number=sequence_number,
                    items=items,
                    menu=menu,
                    total=total,
                    status=status,
                    payment_intent_id=payment_intent_id,
                )
        except Exception as e:
            logger.exception(f"[ORDER] Order persistence failed after reservation: {e}")
            self._compensate_reservation(items, payment_intent_id, request)

            if isinstance(e, IntegrityError) and payment_intent_id:
                existing = self.get_order_by_payment_intent(payment_intent_id)
                if existing is not None:
                    logger.info(f"[ORDER] Order for {payment_intent_id} created concurrently, reusing {existing.id}")
                    return existing
            if isinstance(e, IntegrityError):
                raise OrderNumberCollisionError(drop_id, sequence_number)
            raise OrderCreationError()

        try:
            session.commit()
        except Exception as e:
            # Nothing was written, reservation included
            session.rollback()
            logger.exception(f"[ORDER] Commit of order and reservation failed: {e}")
            raise OrderCreationError()

        orders_created_total.labels(flow=flow).inc()
        logger.info(
            f"[ORDER] Created order {order.id} {order.public_code} ({status.value}, {flow}) "
            f"total={order.total_amount}"
        )

        self._send_confirmation(order)
        return order

    def quote_order(self, request: OrderCreateRequest, drop_id: Optional[int] = None) -> Tuple[int, Decimal]:
        """
        Price a cart against the drop's menu without reserving anything.

        Returns:
            (drop_id, total) with the total computed from selling_price snapshots
        """
        try:
            drop = self._resolve_drop(drop_id, enforce_deadline=True)
            items = request.reservation_items
            menu = self._load_menu_lines(drop, items)
            return drop.id, self._compute_total(menu, items, request.total_amount)
        finally:
            # Read-only; do not keep the transaction open across gateway calls
            self.session.rollback()

    def _resolve_drop(self, drop_id: Optional[int], enforce_deadline: bool) -> Drop:
        if enforce_deadline or drop_id is None:
            return require_orderable_drop(self.session, drop_id, self.grace_period_minutes)
        drop = get_drop(self.session, drop_id)
        if drop.status == DropStatus.CANCELLED:
            raise ValidationError(f'Drop {drop_id} is cancelled')
        return drop

    def _load_menu_lines(self, drop: Drop, items: List[ReservationItem]) -> Dict[int, DropProduct]:
        ids = [item.drop_product_id for item in items]
        rows = {
            dp.id: dp
            for dp in self.session.query(DropProduct)
            .options(joinedload(DropProduct.product))
            .filter(DropProduct.id.in_(ids))
            .all()
        }
        foreign = [dp_id for dp_id in ids if dp_id not in rows or rows[dp_id].drop_id != drop.id]
        if foreign:
            raise ValidationError(
                'Some items are not available in this drop',
                details=[f'drop_product {dp_id} is not on drop {drop.id}' for dp_id in foreign],
            )
        return rows

    def _compute_total(self, menu: Dict[int, DropProduct], items: List[ReservationItem],
                       client_total: Optional[Decimal]) -> Decimal:
        total = sum(
            (Decimal(menu[item.drop_product_id].selling_price) * item.quantity for item in items),
            Decimal('0.00'),
        ).quantize(Decimal('0.01'))
        if client_total is not None and abs(Decimal(client_total) - total) > TOTAL_TOLERANCE:
            logger.warning(f"[ORDER] Client total {client_total} differs from computed {total}, using computed")
        return total

    def _persist_order(self, request: OrderCreateRequest, drop_id: int, client_id: int, sequence_number: int,
                       items: List[ReservationItem], menu: Dict[int, DropProduct], total: Decimal,
                       status: OrderStatus, payment_intent_id: Optional[str]) -> Order:
        session = self.session
        drop = session.query(Drop).options(joinedload(Drop.location)).filter(Drop.id == drop_id).one()
        order = Order(
            order_number=format_order_number(drop, sequence_number),
            public_code=generate_order_code(drop, sequence_number),
            sequence_number=sequence_number,
            drop_id=drop_id,
            client_id=client_id,
            customer_name=request.customer_name,
            status=status,
            pickup_time=request.pickup_time,
            pickup_date=request.pickup_date,
            total_amount=total,
            special_instructions=request.special_instructions,
            payment_intent_id=payment_intent_id,
            payment_method=PaymentMethod.STRIPE if payment_intent_id else PaymentMethod.PAY_LATER,
        )
        session.add(order)
        session.flush()

        for item in items:
            session.add(OrderProduct(
                order_id=order.id,
                drop_product_id=item.drop_product_id,
                order_quantity=item.quantity,
                unit_price=menu[item.drop_product_id].selling_price,
            ))
        session.flush()
        return order

    def _compensate_reservation(self, items: List[ReservationItem], payment_intent_id: Optional[str],
                                request: OrderCreateRequest) -> bool:
        """
        Give back a reservation whose order could not be written.

        The release runs in the reservation's own transaction. When it fails
        the whole transaction is rolled back, which discards the reservation
        as well, and the admin is alerted because the database misbehaved
        in the middle of checkout.
        """
        session = self.session
        try:
            inventory_service.release_multiple(session, items, reason='compensation')
            session.commit()
            logger.warning("[ORDER] Compensating release applied")
            return True
        except Exception as e:
            session.rollback()
            logger.exception(f"[ORDER] Compensating release failed, transaction rolled back: {e}")
            error = e

        try:
            raise_admin_alert(
                session,
                AlertKind.COMPENSATION_FAILED,
                'Order creation failed and its compensating release failed too. The transaction was '
                'rolled back; confirm the ledger with `flask audit-ledger`.',
                payment_intent_id=payment_intent_id,
                details={
                    'customer_email': str(request.customer_email),
                    'items': [item.model_dump() for item in items],
                    'error': str(error),
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            logger.critical("[ORDER] Could not record compensation failure alert", exc_info=True)
        return False

    def _send_confirmation(self, order: Order):
        if not self.send_emails or order.client is None:
            return
        items = [
            {
                'name': line.drop_product.product.name if line.drop_product and line.drop_product.product else '',
                'quantity': line.order_quantity,
                'unit_price': line.unit_price,
            }
            for line in order.lines
        ]
        sent = send_order_confirmation_email(
            to_email=order.client.email,
            customer_name=order.customer_name,
            public_code=order.public_code,
            items=items,
            total_amount=order.total_amount,
            pickup_date=order.pickup_date.isoformat(),
            pickup_time=order.pickup_time,
            location_name=order.drop.location.name if order.drop and order.drop.location else None,
            special_instructions=order.special_instructions,
        )
        if not sent:
            logger.warning(f"[ORDER] Confirmation email failed for order {order.id}")

    # =====================================================
    # LOOKUPS
    # =====================================================

    def get_order(self, order_id: int) -> Order:
        order = self.session.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError(f'Order {order_id} not found')
        return order

    def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return self.session.query(Order).filter(Order.payment_intent_id == payment_intent_id).first()

    def get_order_by_code(self, order_code: str) -> Order:
        """
        Find an order by the code printed on the pickup ticket.

        Accepts 'IH01-001' or '#ih01-001'. Raises ValidationError for a
        malformed code and NotFoundError when no order carries it.
        """
        components = parse_order_code((order_code or '').strip().upper())
        if components is None:
            raise ValidationError(f'Invalid order code: {order_code}')

        public_code = format_order_code(components)
        order = self.session.query(Order).filter(Order.public_code == public_code).first()
        if not order:
            raise NotFoundError(f'Order {public_code} not found')
        return order

    # =====================================================
    # LIFECYCLE
    # =====================================================

    def update_order_status(self, order_id: int, new_status) -> Order:
        """
        Admin status change with transition checks. Cancelling releases the
        order's inventory once.

        Raises:
            NotFoundError, InvalidStatusTransitionError
        """
        new_status = OrderStatus(new_status)
        order = self.get_order(order_id)
        current = order.status
        if new_status == current:
            return order
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransitionError(current.value, new_status.value)

        if not self._transition(order, current, new_status):
            self.session.rollback()
            order = self.get_order(order_id)
            raise InvalidStatusTransitionError(order.status.value, new_status.value)

        if new_status == OrderStatus.CANCELLED:
            inventory_service.release_order_inventory(self.session, order, reason='order_cancelled')
        self.session.commit()
        logger.info(f"[ORDER] Order {order.id} {current.value} -> {new_status.value}")

        if self.send_emails and new_status in NOTIFIED_STATUSES and order.client is not None:
            send_order_status_update_email(order.client.email, order.customer_name, order.public_code, new_status.value)
        return order

    def _transition(self, order: Order, expected: OrderStatus, new_status: OrderStatus, **values) -> bool:
        """Conditional status flip. False when someone else changed the order first."""
        result = self.session.execute(
            update(_orders)
            .where(_orders.c.id == order.id)
            .where(_orders.c.status == expected.value)
            .values(status=new_status.value, updated_at=datetime.now(timezone.utc), **values)
        )
        self.session.expire(order)
        return result.rowcount == 1

    def confirm_order(self, order: Order) -> bool:
        """pending -> confirmed. False (no-op) if the order is not pending any more."""
        confirmed = self._transition(order, OrderStatus.PENDING, OrderStatus.CONFIRMED)
        self.session.commit()
        if confirmed:
            logger.info(f"[ORDER] Order {order.id} confirmed by payment")
        return confirmed

    def cancel_order(self, order: Order, reason: str, from_statuses=(OrderStatus.PENDING,)) -> bool:
        """
        Cancel an order and release its inventory. Idempotent: an order that
        is already cancelled only gets its release re-checked (the release
        marker makes that a no-op), any other status is left alone.
        """
        cancelled = False
        for status in from_statuses:
            if self._transition(order, status, OrderStatus.CANCELLED):
                cancelled = True
                break
        if cancelled or order.status == OrderStatus.CANCELLED:
            inventory_service.release_order_inventory(self.session, order, reason=reason)
        self.session.commit()
        if cancelled:
            logger.info(f"[ORDER] Order {order.id} cancelled ({reason})")
        return cancelled

    def reconfirm_cancelled_order(self, order: Order) -> Order:
        """
        A payment succeeded for an order we had already cancelled: take the
        stock again and confirm it.

        Raises:
            InsufficientInventoryError: the stock is gone; nothing changed
        """
        items = order.reservation_items
        try:
            inventory_service.reserve_multiple(self.session, items)
            if not self._transition(order, OrderStatus.CANCELLED, OrderStatus.CONFIRMED, inventory_released_at=None):
                raise OrderCreationError(f'Order {order.id} changed while being reconfirmed')
            self.session.commit()
        except DropShopError:
            self.session.rollback()
            raise
        logger.info(f"[ORDER] Cancelled order {order.id} re-reserved and confirmed after late payment")
        return order

    def release_stale_orders(self, older_than_minutes: int = 30, now: Optional[datetime] = None) -> List[int]:
        """
        Cancel Stripe orders left pending longer than `older_than_minutes`
        and release their stock. Their PaymentIntents are cancelled too when
        a gateway is available, so they cannot be paid afterwards.

        Returns:
            ids of the orders cancelled by this run
        """
        now = as_utc(now) or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=older_than_minutes)
        candidates = (
            self.session.query(Order)
            .filter(
                Order.status == OrderStatus.PENDING,
                Order.payment_method == PaymentMethod.STRIPE,
                Order.inventory_released_at.is_(None),
            )
            .order_by(Order.id)
            .all()
        )
        # created_at may come back naive (SQLite), compare in Python
        stale = [order for order in candidates if as_utc(order.created_at) < cutoff]

        released = []
        for order in stale:
            payment_intent_id = order.payment_intent_id
            if self.cancel_order(order, reason='stale_order'):
                released.append(order.id)
                self._cancel_intent_quietly(payment_intent_id)
        if released:
            logger.info(f"[ORDER] Released {len(released)} stale orders: {released}")
        return released

    def _cancel_intent_quietly(self, payment_intent_id: Optional[str]):
        if not payment_intent_id or self.gateway is None:
            return
        try:
            self.gateway.cancel_payment_intent(payment_intent_id)
        except PaymentGatewayError as e:
            logger.warning(f"[ORDER] PaymentIntent {payment_intent_id} not cancelled: {e.message}")


def get_order_service(session=None) -> OrderService:
    """OrderService wired to the current app's session, settings and gateway."""
    cfg = current_app.config
    return OrderService(
        session if session is not None else get_session(),
        grace_period_minutes=cfg.get('DROP_GRACE_PERIOD_MINUTES', 15),
        send_emails=True,
        gateway=current_app.extensions.get('stripe_gateway'),
    )
