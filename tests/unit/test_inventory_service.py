"""
Unit tests for the drop stock ledger: reservation, release and audit.
"""
import threading

import pytest

from dropshop.database import get_database
from dropshop.exceptions import InsufficientInventoryError, ValidationError
from dropshop.models import DropProduct, Order, OrderStatus
from dropshop.services import inventory_service


def _reserved(session, drop_product_id):
    session.expire_all()
    return session.get(DropProduct, drop_product_id).reserved_quantity


class TestReserveMultiple:
    """Tests for all-or-nothing batch reservation."""

    def test_reserves_whole_batch(self, session, active_drop, make_drop_product):
        first = make_drop_product(active_drop, stock=5, name='Pastrami')
        second = make_drop_product(active_drop, stock=3, name='Caprese')

        batch = inventory_service.reserve_multiple(session, [(second.id, 2), (first.id, 1)])
        session.commit()

        assert [item.drop_product_id for item in batch] == sorted([first.id, second.id])
        assert _reserved(session, first.id) == 1
        assert _reserved(session, second.id) == 2

    def test_duplicate_lines_are_summed(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)

        batch = inventory_service.reserve_multiple(session, [(dp.id, 2), (dp.id, 2)])
        session.commit()

        assert len(batch) == 1
        assert batch[0].quantity == 4
        assert _reserved(session, dp.id) == 4

    def test_one_short_line_reserves_nothing(self, session, active_drop, make_drop_product):
        plenty = make_drop_product(active_drop, stock=10, name='Pastrami')
        scarce = make_drop_product(active_drop, stock=1, name='Caprese')

        with pytest.raises(InsufficientInventoryError) as exc_info:
            inventory_service.reserve_multiple(session, [(plenty.id, 3), (scarce.id, 2)])
        session.commit()

        assert exc_info.value.shortages == [
            {'drop_product_id': scarce.id, 'requested': 2, 'available': 1}
        ]
        assert _reserved(session, plenty.id) == 0
        assert _reserved(session, scarce.id) == 0

    def test_unknown_drop_product_is_a_shortage(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)

        with pytest.raises(InsufficientInventoryError) as exc_info:
            inventory_service.reserve_multiple(session, [(dp.id, 1), (99999, 1)])
        session.rollback()

        assert exc_info.value.shortages[0]['drop_product_id'] == 99999
        assert exc_info.value.shortages[0]['reason'] == 'not_found'
        assert _reserved(session, dp.id) == 0

    def test_exact_remaining_stock_can_be_reserved(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=3, reserved=1)

        inventory_service.reserve_multiple(session, [(dp.id, 2)])
        session.commit()

        assert _reserved(session, dp.id) == 3

    @pytest.mark.parametrize('items', [[], [(1, 0)], [(1, -2)]])
    def test_invalid_batches_are_rejected(self, session, items):
        with pytest.raises(ValidationError):
            inventory_service.reserve_multiple(session, items)

    def test_concurrent_reservations_never_oversell(self, app, session, active_drop, make_drop_product):
        """Ten buyers race for five units: exactly five win."""
        dp_id = make_drop_product(active_drop, stock=5).id
        # The main thread must not hold the database write lock
        session.rollback()

        database = get_database()
        outcomes = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def buy():
            worker_session = database.session_factory()
            start.wait()
            try:
                inventory_service.reserve_multiple(worker_session, [(dp_id, 1)])
                worker_session.commit()
                result = 'reserved'
            except InsufficientInventoryError:
                worker_session.rollback()
                result = 'sold_out'
            finally:
                worker_session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=buy) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count('reserved') == 5
        assert outcomes.count('sold_out') == 5
        assert _reserved(session, dp_id) == 5


class TestReleaseMultiple:
    """Tests for releasing reserved units."""

    def test_release_decrements(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, reserved=3)

        summary = inventory_service.release_multiple(session, [(dp.id, 2)], reason='test')
        session.commit()

        assert summary == {'released': 2, 'floored': [], 'missing': []}
        assert _reserved(session, dp.id) == 1

    def test_release_is_floored_at_zero(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, reserved=1)

        summary = inventory_service.release_multiple(session, [(dp.id, 4)], reason='test')
        session.commit()

        assert summary['floored'] == [dp.id]
        assert _reserved(session, dp.id) == 0

    def test_unknown_rows_are_skipped(self, session, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, reserved=2)

        summary = inventory_service.release_multiple(session, [(dp.id, 1), (424242, 1)], reason='test')
        session.commit()

        assert summary['missing'] == [424242]
        assert _reserved(session, dp.id) == 1

    def test_empty_release_is_a_noop(self, session):
        assert inventory_service.release_multiple(session, [], reason='test')['released'] == 0


class TestOrderRelease:
    """Tests for the per-order release marker."""

    def test_order_inventory_is_released_once(self, session, order_service, order_request,
                                              active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]))
        assert _reserved(session, dp.id) == 2

        order = session.get(Order, order.id)
        assert inventory_service.release_order_inventory(session, order, reason='test') is True
        session.commit()
        assert inventory_service.release_order_inventory(session, order, reason='test') is False
        session.commit()

        assert _reserved(session, dp.id) == 0
        assert session.get(Order, order.id).inventory_released_at is not None


class TestLedgerAudit:
    """Tests for drift detection and repair."""

    def test_consistent_ledger_has_no_drift(self, session, order_service, order_request,
                                            active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order_service.create_order(order_request([(dp.id, 2)]))

        assert inventory_service.get_ledger_drift(session) == []

    def test_phantom_reservation_is_detected_and_repaired(self, session, active_drop, make_drop_product):
        # Reserved units without any order, as left by a crash between commits
        dp = make_drop_product(active_drop, stock=5, reserved=3)

        drift = inventory_service.get_ledger_drift(session, active_drop.id)
        assert drift == [{
            'drop_product_id': dp.id,
            'drop_id': active_drop.id,
            'reserved_quantity': 3,
            'expected_reserved': 0,
            'difference': 3,
        }]

        result = inventory_service.repair_ledger_drift(session, drift)
        session.commit()

        assert result == {'repaired': [dp.id], 'unresolved': []}
        assert _reserved(session, dp.id) == 0

    def test_released_orders_do_not_count(self, session, order_service, order_request,
                                          active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order = order_service.create_order(order_request([(dp.id, 2)]))
        order_service.update_order_status(order.id, OrderStatus.CANCELLED)

        assert _reserved(session, dp.id) == 0
        assert inventory_service.get_ledger_drift(session) == []
