"""Request/response contracts validated at every boundary."""
from dropshop.schemas.order import (
    CartItem, CustomerInfo, OrderCreateRequest, OrderStatusUpdateRequest, ReservationItem,
    merge_reservation_items,
)
from dropshop.schemas.drop_product import (
    DropMenuItem, DropMenuUpdateRequest, DropStatusChangeRequest, DeadlineRequest
)
from dropshop.schemas.catalog import (
    DropCreateRequest, DropUpdateRequest, ProductCreateRequest, LocationCreateRequest
)
from dropshop.schemas.payment import (
    CreateIntentRequest, AvailabilityCheckRequest, PaymentIntentMetadata, StripeEvent
)
from dropshop.schemas.validation import parse_request

__all__ = [
    'CartItem', 'CustomerInfo', 'OrderCreateRequest', 'OrderStatusUpdateRequest', 'ReservationItem',
    'merge_reservation_items',
    'DropMenuItem', 'DropMenuUpdateRequest', 'DropStatusChangeRequest', 'DeadlineRequest',
    'DropCreateRequest', 'DropUpdateRequest', 'ProductCreateRequest', 'LocationCreateRequest',
    'CreateIntentRequest', 'AvailabilityCheckRequest', 'PaymentIntentMetadata', 'StripeEvent',
    'parse_request',
]
