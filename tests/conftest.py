import hashlib
import hmac
import json
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from config import TestingConfig
from dropshop import create_app
from dropshop.database import get_database
from dropshop.models import Location, Product, Drop, DropStatus, DropProduct
from dropshop.schemas import OrderCreateRequest
from dropshop.schemas.payment import StripePaymentIntent
from dropshop.services.order_service import OrderService
from dropshop.services.payment_service import StripeGateway, to_minor_units


class FakeGateway(StripeGateway):
    """Stripe gateway without network. Webhook verification stays real."""

    def __init__(self, webhook_secret):
        super().__init__('sk_test_dummy', webhook_secret=webhook_secret)
        self.intents = {}
        self.cancelled = []

    def create_payment_intent(self, amount, metadata, description=None, idempotency_key=None):
        intent_id = f'pi_{uuid.uuid4().hex[:16]}'
        self.intents[intent_id] = {'id': intent_id, 'amount': to_minor_units(amount), 'metadata': metadata}
        return {'id': intent_id, 'client_secret': f'{intent_id}_secret', 'amount': to_minor_units(amount)}

    def retrieve_payment_intent(self, payment_intent_id):
        return StripePaymentIntent.model_validate(self.intents[payment_intent_id])

    def cancel_payment_intent(self, payment_intent_id):
        self.cancelled.append(payment_intent_id)


@pytest.fixture(scope='function')
def app(tmp_path):
    """Application bound to a fresh SQLite database."""
    class Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'dropshop.db'}"

    app = create_app(Config)
    app.extensions['stripe_gateway'] = FakeGateway(app.config['STRIPE_WEBHOOK_SECRET'])

    with app.app_context():
        get_database().create_all()
        yield app
        get_database().dispose()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Session shared with the requests made through the test client."""
    session = get_database().session
    yield session
    session.rollback()


@pytest.fixture
def gateway(app):
    return app.extensions['stripe_gateway']


@pytest.fixture
def order_service(session, gateway):
    return OrderService(session, send_emails=False, gateway=gateway)


@pytest.fixture
def location(session):
    location = Location(name='Ironhack Campus', code='IH', district='Centro', address='Calle 1')
    session.add(location)
    session.commit()
    return location


@pytest.fixture
def make_product(session):
    def _make(name='Pastrami', price='9.50', **kwargs):
        product = Product(name=name, sell_price=Decimal(price), **kwargs)
        session.add(product)
        session.commit()
        return product
    return _make


@pytest.fixture
def active_drop(session, location):
    """Active drop whose deadline is two hours away."""
    drop = Drop(
        date=date.today() + timedelta(days=1),
        location_id=location.id,
        drop_number=1,
        status=DropStatus.ACTIVE,
        pickup_deadline=datetime.now(timezone.utc) + timedelta(hours=2),
    )
    session.add(drop)
    session.commit()
    return drop


@pytest.fixture
def make_drop_product(session, make_product):
    def _make(drop, stock=5, price='9.50', reserved=0, name='Pastrami'):
        product = make_product(name=name, price=price)
        drop_product = DropProduct(
            drop_id=drop.id,
            product_id=product.id,
            stock_quantity=stock,
            reserved_quantity=reserved,
            selling_price=Decimal(price),
        )
        session.add(drop_product)
        session.commit()
        return drop_product
    return _make


@pytest.fixture
def order_request():
    """Build a valid OrderCreateRequest for a list of (drop_product_id, qty)."""
    def _build(items, email='ana@example.com', **overrides):
        data = {
            'customerName': 'Ana Lopez',
            'customerEmail': email,
            'customerPhone': '600000000',
            'pickupTime': '13:00',
            'pickupDate': (date.today() + timedelta(days=1)).isoformat(),
            'items': [{'id': dp_id, 'quantity': qty, 'name': f'item {dp_id}'} for dp_id, qty in items],
        }
        data.update(overrides)
        return OrderCreateRequest.model_validate(data)
    return _build


def sign_payload(payload: str, secret: str, timestamp=None) -> str:
    """Stripe-Signature header for `payload`, as Stripe computes it."""
    timestamp = timestamp or int(time.time())
    signed = f'{timestamp}.{payload}'.encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


@pytest.fixture
def post_stripe_event(client, app):
    """POST a signed Stripe event to the webhook endpoint."""
    def _post(event_type, intent, event_id=None):
        event = {
            'id': event_id or f'evt_{uuid.uuid4().hex[:16]}',
            'object': 'event',
            'type': event_type,
            'data': {'object': dict({'object': 'payment_intent'}, **intent)},
        }
        payload = json.dumps(event)
        return client.post(
            '/api/webhooks/stripe',
            data=payload,
            headers={
                'Stripe-Signature': sign_payload(payload, app.config['STRIPE_WEBHOOK_SECRET']),
                'Content-Type': 'application/json',
            },
        )
    return _post


@pytest.fixture
def sign_stripe_payload():
    return sign_payload
