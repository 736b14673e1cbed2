"""
Unit tests for order creation and lifecycle.
"""
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from dropshop.exceptions import (
    InsufficientInventoryError, InvalidStatusTransitionError, NoActiveDropError,
    OrderCreationError, ValidationError,
)
from dropshop.database import get_database
from dropshop.models import (
    AdminAlert, Client, DropProduct, DropStatus, Order, OrderProduct, OrderStatus, PaymentMethod,
)
from dropshop.services import inventory_service
from dropshop.services.order_service import OrderService


def _reserved(session, drop_product_id):
    session.expire_all()
    return session.get(DropProduct, drop_product_id).reserved_quantity


class TestCreateOrder:
    """Tests for order creation."""

    def test_creates_pending_order_with_lines(self, session, order_service, order_request,
                                              active_drop, make_drop_product):
        pastrami = make_drop_product(active_drop, stock=5, price='9.50', name='Pastrami')
        caprese = make_drop_product(active_drop, stock=5, price='7.25', name='Caprese')

        order = order_service.create_order(order_request([(pastrami.id, 2), (caprese.id, 1)]))

        assert order.status == OrderStatus.PENDING
        assert order.payment_method == PaymentMethod.PAY_LATER
        assert order.total_amount == Decimal('26.25')
        assert order.public_code == '#IH01-001'
        assert order.order_number.endswith(f'-{active_drop.id}-001')
        assert sorted((line.drop_product_id, line.order_quantity) for line in order.lines) == sorted(
            [(pastrami.id, 2), (caprese.id, 1)]
        )
        assert _reserved(session, pastrami.id) == 2
        assert _reserved(session, caprese.id) == 1

    def test_sequence_numbers_increase_per_drop(self, order_service, order_request,
                                                active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=10)

        first = order_service.create_order(order_request([(dp.id, 1)]))
        second = order_service.create_order(order_request([(dp.id, 1)], email='bob@example.com'))

        assert first.public_code == '#IH01-001'
        assert second.public_code == '#IH01-002'

    def test_client_is_reused_by_email(self, session, order_service, order_request,
                                       active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=10)

        order_service.create_order(order_request([(dp.id, 1)], email='Ana@Example.com'))
        order_service.create_order(order_request([(dp.id, 1)], email='ana@example.com'))

        assert session.query(Client).count() == 1
        assert session.query(Client).one().email == 'ana@example.com'

    def test_client_total_is_ignored(self, order_service, order_request, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, price='9.50')

        order = order_service.create_order(order_request([(dp.id, 1)], totalAmount='1.00'))

        assert order.total_amount == Decimal('9.50')

    def test_sold_out_leaves_nothing_behind(self, session, order_service, order_request,
                                            active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=1)

        with pytest.raises(InsufficientInventoryError) as exc_info:
            order_service.create_order(order_request([(dp.id, 2)]))

        assert exc_info.value.shortages[0]['available'] == 1
        assert session.query(Order).count() == 0
        assert _reserved(session, dp.id) == 0

    def test_items_from_another_drop_are_rejected(self, session, order_service, order_request,
                                                  active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)

        with pytest.raises(ValidationError):
            order_service.create_order(order_request([(dp.id + 100, 1)]))
        assert _reserved(session, dp.id) == 0

    def test_no_active_drop(self, session, order_service, order_request, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        active_drop.status = DropStatus.COMPLETED
        session.commit()

        with pytest.raises(NoActiveDropError):
            order_service.create_order(order_request([(dp.id, 1)]))

    def test_drop_within_grace_period_accepts_orders(self, session, order_service, order_request,
                                                     active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        active_drop.pickup_deadline = datetime.now(timezone.utc) - timedelta(minutes=5)
        session.commit()

        order = order_service.create_order(order_request([(dp.id, 1)]))

        assert order.id is not None

    def test_failed_persistence_releases_reservation(self, session, order_service, order_request,
                                                     active_drop, make_drop_product, monkeypatch):
        dp = make_drop_product(active_drop, stock=5)

        def broken_persist(**kwargs):
            raise RuntimeError('disk full')

        monkeypatch.setattr(order_service, '_persist_order', broken_persist)

        with pytest.raises(OrderCreationError):
            order_service.create_order(order_request([(dp.id, 3)]))

        assert session.query(Order).count() == 0
        assert _reserved(session, dp.id) == 0

    def test_failed_compensation_raises_critical_alert(self, session, order_service, order_request,
                                                       active_drop, make_drop_product, monkeypatch):
        dp = make_drop_product(active_drop, stock=5)

        def broken_persist(**kwargs):
            raise RuntimeError('disk full')

        def broken_release(*args, **kwargs):
            raise RuntimeError('database gone')

        monkeypatch.setattr(order_service, '_persist_order', broken_persist)
        monkeypatch.setattr(inventory_service, 'release_multiple', broken_release)

        with pytest.raises(OrderCreationError):
            order_service.create_order(order_request([(dp.id, 3)]))

        alert = session.query(AdminAlert).one()
        assert alert.kind == 'COMPENSATION_FAILED'
        assert alert.severity == 'CRITICAL'
        # The rollback took the reservation with it
        assert _reserved(session, dp.id) == 0
        assert session.query(Order).count() == 0

    def test_hold_is_committed_together_with_its_order(self, session, order_service, order_request,
                                                       active_drop, make_drop_product, monkeypatch):
        """Other connections never see a hold without the order that owns it."""
        dp_id = make_drop_product(active_drop, stock=1).id
        real_persist = order_service._persist_order
        committed = {}

        def persist_after_peeking(**kwargs):
            raw = get_database().engine.raw_connection()
            try:
                cursor = raw.cursor()
                cursor.execute('SELECT reserved_quantity FROM drop_products WHERE id = ?', (dp_id,))
                committed['reserved'] = cursor.fetchone()[0]
                cursor.execute('SELECT COUNT(*) FROM orders')
                committed['orders'] = cursor.fetchone()[0]
            finally:
                raw.close()
            return real_persist(**kwargs)

        monkeypatch.setattr(order_service, '_persist_order', persist_after_peeking)
        order_service.create_order(order_request([(dp_id, 1)]))

        assert committed == {'reserved': 0, 'orders': 0}
        assert _reserved(session, dp_id) == 1
        assert inventory_service.get_ledger_drift(session) == []

        monkeypatch.setattr(order_service, '_persist_order', real_persist)
        with pytest.raises(InsufficientInventoryError):
            order_service.create_order(order_request([(dp_id, 1)], email='bob@example.com'))
        assert session.query(Order).count() == 1

    def test_same_payment_intent_twice_returns_first_order(self, session, order_service, order_request,
                                                           active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        first = order_service.create_order(order_request([(dp.id, 2)]), payment_intent_id='pi_same')

        second = order_service.create_order(order_request([(dp.id, 2)]), payment_intent_id='pi_same')

        assert second.id == first.id
        assert session.query(Order).count() == 1
        assert _reserved(session, dp.id) == 2

    def test_concurrent_checkouts_never_oversell(self, session, order_request, active_drop, make_drop_product):
        """Ten buyers race for five units: five orders, five sold out."""
        dp_id = make_drop_product(active_drop, stock=5).id
        requests = [order_request([(dp_id, 1)], email=f'buyer{i}@example.com') for i in range(10)]
        # The main thread must not hold the database write lock
        session.rollback()

        database = get_database()
        outcomes = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def checkout(request):
            worker_session = database.session_factory()
            start.wait()
            try:
                OrderService(worker_session, send_emails=False).create_order(request)
                result = 'ordered'
            except InsufficientInventoryError:
                result = 'sold_out'
            finally:
                worker_session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=checkout, args=(request,)) for request in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count('ordered') == 5
        assert outcomes.count('sold_out') == 5
        assert _reserved(session, dp_id) == 5
        assert session.query(Order).count() == 5
        sequences = sorted(number for (number,) in session.query(Order.sequence_number))
        assert sequences == [1, 2, 3, 4, 5]
        assert inventory_service.get_ledger_drift(session) == []


class TestQuoteOrder:

    def test_quote_uses_drop_prices_and_reserves_nothing(self, session, order_service, order_request,
                                                         active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, price='4.10')

        drop_id, total = order_service.quote_order(order_request([(dp.id, 3)]))

        assert drop_id == active_drop.id
        assert total == Decimal('12.30')
        assert _reserved(session, dp.id) == 0


class TestOrderStatus:
    """Tests for admin status transitions."""

    def test_cancel_releases_inventory(self, session, order_service, order_request,
                                       active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]))

        order = order_service.update_order_status(order.id, 'cancelled')

        assert order.status == OrderStatus.CANCELLED
        assert _reserved(session, dp.id) == 0

    def test_completed_order_keeps_its_units(self, session, order_service, order_request,
                                             active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]))

        for status in ('confirmed', 'prepared', 'completed'):
            order_service.update_order_status(order.id, status)

        assert session.get(Order, order.id).status == OrderStatus.COMPLETED
        assert _reserved(session, dp.id) == 2

    def test_terminal_status_cannot_change(self, order_service, order_request, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 1)]))
        order_service.update_order_status(order.id, 'cancelled')

        with pytest.raises(InvalidStatusTransitionError):
            order_service.update_order_status(order.id, 'confirmed')

    def test_cancel_twice_releases_once(self, session, order_service, order_request,
                                        active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        other = order_service.create_order(order_request([(dp.id, 1)], email='bob@example.com'))
        order = order_service.create_order(order_request([(dp.id, 2)]))

        assert order_service.cancel_order(order, reason='test') is True
        assert order_service.cancel_order(order, reason='test') is False

        # The other order keeps its unit
        assert _reserved(session, dp.id) == 1
        assert session.get(Order, other.id).status == OrderStatus.PENDING

    def test_cancel_leaves_confirmed_orders_alone(self, session, order_service, order_request,
                                                  active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]))
        order_service.confirm_order(order)

        assert order_service.cancel_order(order, reason='payment_failed') is False
        assert session.get(Order, order.id).status == OrderStatus.CONFIRMED
        assert _reserved(session, dp.id) == 2


class TestReleaseStaleOrders:
    """Tests for the abandoned checkout sweeper."""

    def _age(self, session, order_id, minutes):
        session.execute(
            update(Order.__table__)
            .where(Order.__table__.c.id == order_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )
        session.commit()

    def test_old_pending_stripe_orders_are_released(self, session, order_service, order_request, gateway,
                                                    active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        stale = order_service.create_order(order_request([(dp.id, 2)]), payment_intent_id='pi_stale')
        fresh = order_service.create_order(order_request([(dp.id, 1)], email='bob@example.com'),
                                           payment_intent_id='pi_fresh')
        pay_later = order_service.create_order(order_request([(dp.id, 1)], email='cy@example.com'))
        for order_id in (stale.id, pay_later.id):
            self._age(session, order_id, 45)

        released = order_service.release_stale_orders(older_than_minutes=30)

        assert released == [stale.id]
        assert gateway.cancelled == ['pi_stale']
        assert session.get(Order, stale.id).status == OrderStatus.CANCELLED
        assert session.get(Order, fresh.id).status == OrderStatus.PENDING
        assert session.get(Order, pay_later.id).status == OrderStatus.PENDING
        assert _reserved(session, dp.id) == 2

    def test_second_run_is_a_noop(self, session, order_service, order_request, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]), payment_intent_id='pi_1')
        self._age(session, order.id, 45)

        assert order_service.release_stale_orders(older_than_minutes=30) == [order.id]
        assert order_service.release_stale_orders(older_than_minutes=30) == []
        assert _reserved(session, dp.id) == 0
        assert session.query(OrderProduct).count() == 1
