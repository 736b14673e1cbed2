"""Models package - exports all SQLAlchemy models."""
from dropshop.models.location import Location
from dropshop.models.product import Product, ProductCategory
from dropshop.models.drop import Drop, DropStatus, TERMINAL_DROP_STATUSES
from dropshop.models.drop_product import DropProduct
from dropshop.models.client import Client
from dropshop.models.order import Order, OrderStatus, PaymentMethod
from dropshop.models.order_product import OrderProduct
from dropshop.models.payment_event import PaymentEvent, PaymentEventStatus, FINAL_EVENT_STATUSES
from dropshop.models.admin_alert import AdminAlert, AlertSeverity, AlertKind

__all__ = [
    'Location', 'Product', 'ProductCategory',
    'Drop', 'DropStatus', 'TERMINAL_DROP_STATUSES', 'DropProduct',
    'Client', 'Order', 'OrderStatus', 'PaymentMethod', 'OrderProduct',
    'PaymentEvent', 'PaymentEventStatus', 'FINAL_EVENT_STATUSES',
    'AdminAlert', 'AlertSeverity', 'AlertKind',
]
