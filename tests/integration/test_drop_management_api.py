"""
Integration tests for drop scheduling and the admin drop listings.
"""
from datetime import date, timedelta

import pytest

from dropshop.models import Drop, DropProduct, DropStatus, Location


@pytest.fixture
def past_drop(session, location):
    drop = Drop(
        date=date.today() - timedelta(days=3),
        location_id=location.id,
        drop_number=5,
        status=DropStatus.COMPLETED,
    )
    session.add(drop)
    session.commit()
    return drop


class TestScheduleDrop:

    def test_create_drop(self, client, location):
        body = {'date': '2030-05-10', 'location_id': location.id, 'notes': 'Rain plan: indoors'}

        first = client.post('/api/drops', json=body)
        second = client.post('/api/drops', json=dict(body, date='2030-05-17'))

        assert first.status_code == 201
        data = first.get_json()
        assert data['status'] == 'upcoming'
        assert data['drop_number'] == 1
        assert data['pickup_deadline'].startswith('2030-05-10T14:00')
        assert data['location']['code'] == 'IH'
        assert data['notes'] == 'Rain plan: indoors'
        assert data['total_available'] == 0
        assert second.get_json()['drop_number'] == 2

    def test_inactive_location_is_rejected(self, client, session, location):
        location.active = False
        session.commit()

        response = client.post('/api/drops', json={'date': '2030-05-10', 'location_id': location.id})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Invalid or inactive location'
        assert session.query(Drop).count() == 0

    def test_missing_fields(self, client, location):
        response = client.post('/api/drops', json={'notes': 'no date'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Drop date and location are required'


class TestDropListings:

    def test_all_and_future(self, client, past_drop, active_drop, make_drop_product):
        make_drop_product(active_drop, stock=5, reserved=2)

        everything = client.get('/api/drops').get_json()
        future = client.get('/api/drops/future').get_json()

        assert [d['id'] for d in everything] == [past_drop.id, active_drop.id]
        assert everything[1]['total_stock'] == 5
        assert everything[1]['total_available'] == 3
        assert [d['id'] for d in future] == [active_drop.id]

    def test_admin_upcoming_and_past(self, client, session, order_service, order_request,
                                     past_drop, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order_service.create_order(order_request([(dp.id, 2)]))
        cancelled = Drop(
            date=date.today() + timedelta(days=7),
            location_id=active_drop.location_id,
            drop_number=9,
            status=DropStatus.CANCELLED,
        )
        session.add(cancelled)
        session.commit()

        upcoming = client.get('/api/drops/admin/upcoming').get_json()
        past = client.get('/api/drops/admin/past').get_json()

        assert [d['id'] for d in upcoming] == [active_drop.id]
        assert upcoming[0]['order_count'] == 1
        assert upcoming[0]['revenue'] == '19.00'
        assert upcoming[0]['total_reserved'] == 2
        assert [d['id'] for d in past] == [cancelled.id, past_drop.id]
        assert past[1]['order_count'] == 0


class TestEditDrop:

    def test_update_moves_deadline_and_status(self, client, session, location):
        drop_id = client.post('/api/drops', json={'date': '2030-05-10', 'location_id': location.id}).get_json()['id']

        response = client.put(f'/api/drops/{drop_id}', json={
            'date': '2030-05-11',
            'location_id': location.id,
            'status': 'active',
            'notes': 'Moved a day',
            'modifiedBy': 'chef',
        })

        assert response.status_code == 200
        data = response.get_json()
        assert data['date'] == '2030-05-11'
        assert data['status'] == 'active'
        assert data['pickup_deadline'].startswith('2030-05-11T14:00')
        assert session.get(Drop, drop_id).last_modified_by == 'chef'

    def test_drop_with_orders_stays_at_its_location(self, client, session, order_service, order_request,
                                                    active_drop, make_drop_product):
        other = Location(name='Mercado', code='MX', district='Norte', address='Calle 2')
        session.add(other)
        session.commit()
        dp = make_drop_product(active_drop, stock=5)
        order_service.create_order(order_request([(dp.id, 1)]))

        response = client.put(f'/api/drops/{active_drop.id}', json={
            'date': active_drop.date.isoformat(),
            'location_id': other.id,
        })

        assert response.status_code == 400
        session.expire_all()
        assert session.get(Drop, active_drop.id).location_id != other.id

    def test_get_unknown_drop(self, client, location):
        assert client.get('/api/drops/999').status_code == 404


class TestDeleteDrop:

    def test_drop_without_orders_is_deleted_with_its_menu(self, client, session, active_drop, make_drop_product):
        make_drop_product(active_drop, stock=5)
        drop_id = active_drop.id

        response = client.delete(f'/api/drops/{drop_id}')

        assert response.status_code == 200
        session.expire_all()
        assert session.get(Drop, drop_id) is None
        assert session.query(DropProduct).count() == 0

    def test_drop_with_orders_is_kept(self, client, session, order_service, order_request,
                                      active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order_service.create_order(order_request([(dp.id, 1)]))

        response = client.delete(f'/api/drops/{active_drop.id}')

        assert response.status_code == 400
        assert 'Cancel it instead' in response.get_json()['error']
        assert session.get(Drop, active_drop.id) is not None


def test_inventory_lists_inactive_products(client, session, active_drop, make_drop_product):
    shown = make_drop_product(active_drop, stock=5, name='Pastrami')
    hidden = make_drop_product(active_drop, stock=3, name='Retired')
    hidden.product.active = False
    session.commit()

    response = client.get(f'/api/drops/{active_drop.id}/inventory')

    assert response.status_code == 200
    assert [row['id'] for row in response.get_json()] == [shown.id, hidden.id]
