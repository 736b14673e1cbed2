"""
Integration tests for the drops API.
"""
from datetime import date

from dropshop.models import Drop, DropProduct, DropStatus


class TestStorefrontMenu:

    def test_next_active_drop_with_products(self, client, active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5, reserved=2)

        response = client.get('/api/drops/next-active')

        assert response.status_code == 200
        data = response.get_json()
        assert data['drop']['id'] == active_drop.id
        assert data['drop']['location']['code'] == 'IH'
        assert data['drop']['time_until_deadline'] is not None
        assert data['products'][0]['id'] == dp.id
        assert data['products'][0]['available_quantity'] == 3
        assert data['products'][0]['product']['name'] == 'Pastrami'

    def test_no_active_drop_is_null(self, client, location):
        response = client.get('/api/drops/next-active')

        assert response.status_code == 200
        assert response.get_json() is None

    def test_orderable(self, client, active_drop):
        data = client.get(f'/api/drops/{active_drop.id}/orderable').get_json()

        assert data['orderable'] is True
        assert data['isGracePeriod'] is False

    def test_unknown_drop(self, client, active_drop):
        assert client.get('/api/drops/999/drop-products').status_code == 404


class TestMenuEditor:

    def test_save_menu(self, client, session, active_drop, make_product):
        product = make_product(name='Reuben')

        response = client.put(
            f'/api/drops/{active_drop.id}/drop-products',
            json={'dropProducts': [{'product_id': product.id, 'stock_quantity': 12, 'selling_price': '8.75'}]},
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data['summary']['created'] == [product.id]
        assert data['products'][0]['stock_quantity'] == 12
        assert data['products'][0]['selling_price'] == '8.75'

    def test_duplicate_products_rejected(self, client, active_drop, make_product):
        product = make_product()
        entry = {'product_id': product.id, 'stock_quantity': 1, 'selling_price': '5.00'}

        response = client.put(f'/api/drops/{active_drop.id}/drop-products', json={'dropProducts': [entry, entry]})

        assert response.status_code == 400

    def test_removed_product_with_orders_is_zeroed(self, client, session, order_service, order_request,
                                                    active_drop, make_drop_product):
        dp = make_drop_product(active_drop, stock=5)
        order_service.create_order(order_request([(dp.id, 1)]))

        response = client.put(f'/api/drops/{active_drop.id}/drop-products', json={'dropProducts': []})

        assert response.status_code == 200
        assert response.get_json()['summary']['zeroed'] == [dp.product_id]
        session.expire_all()
        row = session.get(DropProduct, dp.id)
        assert row.stock_quantity == 0
        assert row.reserved_quantity == 1


class TestDropAdmin:

    def test_change_status(self, client, session, location):
        drop = Drop(date=date(2030, 5, 2), location_id=location.id, status=DropStatus.UPCOMING)
        session.add(drop)
        session.commit()

        response = client.put(f'/api/drops/{drop.id}/change-status',
                              json={'newStatus': 'active', 'modifiedBy': 'chef@example.com'})

        assert response.status_code == 200
        data = response.get_json()
        assert data['drop']['status'] == 'active'
        assert data['drop']['pickup_deadline'].startswith('2030-05-02T14:00')

    def test_invalid_status(self, client, active_drop):
        response = client.put(f'/api/drops/{active_drop.id}/change-status', json={'newStatus': 'paused'})

        assert response.status_code == 400

    def test_calculate_deadline(self, client, location):
        response = client.post('/api/drops/calculate-deadline',
                               json={'dropDate': '2030-05-02', 'locationId': location.id})

        assert response.status_code == 200
        assert response.get_json()['deadline'] == '2030-05-02T14:00:00+00:00'

    def test_calculate_deadline_requires_fields(self, client, location):
        response = client.post('/api/drops/calculate-deadline', json={'dropDate': '2030-05-02'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Drop date and location ID are required'
