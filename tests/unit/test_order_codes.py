"""
Unit tests for order codes and counters.
"""
from datetime import date

import pytest

from dropshop.exceptions import NotFoundError
from dropshop.models import Drop, Location
from dropshop.services.order_code_service import (
    OrderCodeComponents, parse_order_code, format_order_code,
    format_order_number, generate_order_code, allocate_order_sequence, allocate_drop_number,
)


class TestOrderCodeFormat:

    def test_parse_with_and_without_hash(self):
        expected = OrderCodeComponents('IH', 1, 7)

        assert parse_order_code('#IH01-007') == expected
        assert parse_order_code('IH01-007') == expected

    @pytest.mark.parametrize('code', ['', 'IH1-007', '#ih01-007', 'IH01-07', 'TOOLONG01-001', None])
    def test_malformed_codes(self, code):
        assert parse_order_code(code) is None

    def test_format(self):
        components = OrderCodeComponents('MX', 3, 42)

        assert format_order_code(components) == '#MX03-042'
        assert format_order_code(components, include_hash=False) == 'MX03-042'

    def test_codes_from_drop(self):
        drop = Drop(id=7, date=date(2025, 3, 14), drop_number=2, location=Location(name='Campus', code='ih'))

        assert generate_order_code(drop, 5) == '#IH02-005'
        assert format_order_number(drop, 5) == 'ORD-20250314-7-005'


class TestCounters:

    def test_order_sequence_increments(self, session, active_drop):
        first = allocate_order_sequence(session, active_drop.id)
        second = allocate_order_sequence(session, active_drop.id)
        session.commit()

        assert (first, second) == (1, 2)

    def test_drop_number_increments(self, session, location):
        assert allocate_drop_number(session, location.id) == 1
        assert allocate_drop_number(session, location.id) == 2
        session.commit()

    def test_unknown_drop(self, session):
        with pytest.raises(NotFoundError):
            allocate_order_sequence(session, 404)
