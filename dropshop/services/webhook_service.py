"""
Stripe webhook processing.

Deliveries are at-least-once and may come out of order. Each Stripe event
id is recorded in payment_event; once an event reached a final status a
redelivery is acknowledged without touching orders or stock. Handlers are
idempotent on their own as well (conditional status updates, per-order
release marker, unique payment_intent_id), so a retry after a crash
converges to the same state.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from dropshop.models import (
    PaymentEvent, PaymentEventStatus, OrderStatus, Order, AlertKind, AlertSeverity,
)
from dropshop.exceptions import InsufficientInventoryError, ValidationError, NotFoundError, NoActiveDropError
from dropshop.schemas.order import OrderCreateRequest
from dropshop.schemas.payment import StripeEvent, StripePaymentIntent, PaymentIntentMetadata
from dropshop.services.alert_service import raise_admin_alert
from dropshop.services.email_service import send_payment_failed_notification
from dropshop.services.metrics_service import stripe_webhook_events_total

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = 'payment_intent.succeeded'
PAYMENT_FAILED = 'payment_intent.payment_failed'


class WebhookService:
    """Applies verified Stripe events to orders and the stock ledger."""

    def __init__(self, session, order_service):
        self.session = session
        self.orders = order_service

    def handle_event(self, event: StripeEvent) -> str:
        """
        Process one verified event.

        Returns:
            Final PaymentEventStatus value, or 'DUPLICATE' for a redelivery
            of an event that was already settled.

        Raises:
            Exception: unexpected failure; the event is stored as FAILED so
                the redelivery Stripe sends after a 5xx runs it again
        """
        record = self._record_event(event)
        if record is None:
            stripe_webhook_events_total.labels(event_type=event.type, outcome='duplicate').inc()
            logger.info(f"[WEBHOOK] Event {event.id} already processed, skipping")
            return 'DUPLICATE'

        try:
            if event.type == PAYMENT_SUCCEEDED:
                status = self.handle_payment_succeeded(event.payment_intent)
            elif event.type == PAYMENT_FAILED:
                status = self.handle_payment_failed(event.payment_intent)
            else:
                logger.info(f"[WEBHOOK] Unhandled event type {event.type}")
                status = PaymentEventStatus.IGNORED
        except Exception as e:
            self.session.rollback()
            logger.exception(f"[WEBHOOK] Error processing event {event.id}: {e}")
            self._finish(event.id, PaymentEventStatus.FAILED, error=str(e))
            stripe_webhook_events_total.labels(event_type=event.type, outcome='failed').inc()
            raise

        self._finish(event.id, status)
        stripe_webhook_events_total.labels(event_type=event.type, outcome=status.value.lower()).inc()
        return status.value

    # =====================================================
    # EVENT HANDLERS
    # =====================================================

    def handle_payment_succeeded(self, intent: StripePaymentIntent) -> PaymentEventStatus:
        order = self.orders.get_order_by_payment_intent(intent.id)

        if order is None:
            return self._create_order_from_payment(intent)

        if order.status == OrderStatus.PENDING:
            if self.orders.confirm_order(order):
                logger.info(f"[WEBHOOK] Order {order.id} promoted to confirmed ({intent.id})")
            return PaymentEventStatus.PROCESSED

        if order.status == OrderStatus.CANCELLED:
            # Swept or failed earlier, the customer paid anyway
            try:
                self.orders.reconfirm_cancelled_order(order)
                return PaymentEventStatus.PROCESSED
            except InsufficientInventoryError as e:
                raise_admin_alert(
                    self.session,
                    AlertKind.RESERVATION_AFTER_PAYMENT_FAILED,
                    f'Payment {intent.id} succeeded for cancelled order {order.public_code} '
                    f'but its stock is gone. Manual refund or fulfilment needed.',
                    payment_intent_id=intent.id,
                    order_id=order.id,
                    details={'unavailable': e.shortages, 'amount': intent.amount},
                )
                self.session.commit()
                return PaymentEventStatus.NEEDS_ATTENTION

        logger.info(f"[WEBHOOK] Order {order.id} already {order.status.value}, nothing to do")
        return PaymentEventStatus.PROCESSED

    def handle_payment_failed(self, intent: StripePaymentIntent) -> PaymentEventStatus:
        order = self.orders.get_order_by_payment_intent(intent.id)
        failure = intent.failure_message
        logger.info(f"[WEBHOOK] Payment failed for {intent.id}: {failure}")

        if order is not None:
            if order.status == OrderStatus.PENDING or order.status == OrderStatus.CANCELLED:
                self._cancel_and_release(order, intent.id)
            else:
                # A later attempt on the same intent already succeeded
                logger.warning(f"[WEBHOOK] Ignoring failure for {order.status.value} order {order.id}")
            customer = {
                'name': order.customer_name,
                'email': order.client.email if order.client else None,
                'phone': order.client.phone if order.client else None,
            }
            cart = [
                {'id': line.drop_product_id, 'quantity': line.order_quantity,
                 'name': line.drop_product.product.name if line.drop_product.product else None}
                for line in order.lines
            ]
            public_code, order_id = order.public_code, order.id
        else:
            # No order means nothing was reserved for this intent
            customer, cart = _contact_from_metadata(intent.metadata)
            public_code, order_id = None, None

        raise_admin_alert(
            self.session,
            AlertKind.PAYMENT_FAILED,
            f'Payment {intent.id} failed: {failure}',
            severity=AlertSeverity.WARNING,
            payment_intent_id=intent.id,
            order_id=order_id,
            details={'customer': customer, 'cart': cart, 'reason': failure},
            notify=False,
        )
        self.session.commit()
        send_payment_failed_notification(intent.id, failure, customer, cart, public_code=public_code)
        return PaymentEventStatus.PROCESSED

    # =====================================================
    # PRIVATE HELPERS
    # =====================================================

    def _create_order_from_payment(self, intent: StripePaymentIntent) -> PaymentEventStatus:
        """Fallback: no order was created at checkout, build it from the intent metadata."""
        try:
            metadata = PaymentIntentMetadata.model_validate(intent.metadata)
        except PydanticValidationError as e:
            return self._payment_without_stock(intent, 'PaymentIntent metadata is incomplete',
                                               {'errors': [err['msg'] for err in e.errors()]})

        request = OrderCreateRequest.from_customer_info(
            metadata.to_customer_info(), metadata.cart_items, total_amount=metadata.total_amount
        )
        try:
            order = self.orders.create_order(
                request,
                payment_intent_id=intent.id,
                drop_id=metadata.drop_id,
                status=OrderStatus.CONFIRMED,
                enforce_deadline=False,
            )
        except InsufficientInventoryError as e:
            return self._payment_without_stock(
                intent, 'Payment succeeded but the cart could not be reserved',
                {'unavailable': e.shortages, 'customer_email': str(metadata.customer_email)},
            )
        except (ValidationError, NotFoundError, NoActiveDropError) as e:
            return self._payment_without_stock(intent, f'Payment succeeded but no order could be built: {e.message}',
                                               {'customer_email': str(metadata.customer_email)})

        logger.info(f"[WEBHOOK] Order {order.id} created from payment {intent.id}")
        return PaymentEventStatus.PROCESSED

    def _payment_without_stock(self, intent: StripePaymentIntent, message: str,
                               details: Dict[str, Any]) -> PaymentEventStatus:
        """Money taken, no stock granted. Never refunded automatically."""
        details = dict(details, amount=intent.amount)
        raise_admin_alert(
            self.session,
            AlertKind.RESERVATION_AFTER_PAYMENT_FAILED,
            f'{message} ({intent.id}). Manual intervention required.',
            payment_intent_id=intent.id,
            details=details,
        )
        self.session.commit()
        return PaymentEventStatus.NEEDS_ATTENTION

    def _cancel_and_release(self, order: Order, payment_intent_id: str):
        order_id = order.id
        try:
            self.orders.cancel_order(order, reason='payment_failed')
        except Exception as e:
            self.session.rollback()
            raise_admin_alert(
                self.session,
                AlertKind.RELEASE_FAILED,
                f'Could not release inventory of order {order_id} after failed payment: {e}',
                payment_intent_id=payment_intent_id,
                order_id=order_id,
            )
            self.session.commit()
            raise

    def _record_event(self, event: StripeEvent) -> Optional[PaymentEvent]:
        """Insert the event row, or return None when it was already settled."""
        session = self.session
        record = session.query(PaymentEvent).filter(PaymentEvent.event_id == event.id).first()
        if record is not None:
            if record.is_final:
                return None
            record.status = PaymentEventStatus.RECEIVED.value
            record.error = None
            session.commit()
            return record

        try:
            with session.begin_nested():
                record = PaymentEvent(
                    event_id=event.id,
                    event_type=event.type,
                    payment_intent_id=event.data.object.get('id'),
                    payload_json=event.model_dump(mode='json'),
                    status=PaymentEventStatus.RECEIVED.value,
                )
                session.add(record)
            session.commit()
        except IntegrityError:
            # Concurrent delivery of the same event
            session.rollback()
            record = session.query(PaymentEvent).filter(PaymentEvent.event_id == event.id).one()
            if record.is_final:
                return None
        return record

    def _finish(self, event_id: str, status: PaymentEventStatus, error: Optional[str] = None):
        record = self.session.query(PaymentEvent).filter(PaymentEvent.event_id == event_id).one()
        record.status = status.value
        record.error = error
        record.processed_at = datetime.now(timezone.utc)
        self.session.commit()


def _contact_from_metadata(metadata: Dict[str, Any]):
    """Best-effort customer and cart from raw intent metadata."""
    customer = {
        'name': metadata.get('customerName'),
        'email': metadata.get('customerEmail'),
        'phone': metadata.get('customerPhone'),
    }
    cart: List[Dict[str, Any]] = []
    raw = metadata.get('cartItems')
    if raw:
        try:
            cart = json.loads(raw) if isinstance(raw, str) else list(raw)
        except ValueError:
            logger.warning(f"[WEBHOOK] Unreadable cartItems metadata: {raw!r}")
    return customer, cart
