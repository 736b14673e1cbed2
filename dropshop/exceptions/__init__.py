"""Custom exceptions for the drop storefront."""

SOLD_OUT_MESSAGE = (
    'Oh no! Someone just snagged the last one. '
    'Head back to see other delicious options still available.'
)


class DropShopError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['error'] = self.message
        return rv


class ValidationError(DropShopError):
    """Malformed or incomplete input. Rejected before any side effect."""
    def __init__(self, message, details=None):
        payload = {'details': details} if details else None
        super().__init__(message, 400, payload)


class BusinessLogicError(DropShopError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class NotFoundError(DropShopError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class NoActiveDropError(BusinessLogicError):
    """No drop is currently accepting orders."""
    def __init__(self, message='No active drop available for ordering'):
        super().__init__(message, status_code=400)


class InsufficientInventoryError(BusinessLogicError):
    """
    One or more drop products cannot cover the requested quantity.

    `shortages` is a list of dicts with drop_product_id, requested and
    available, one per unsatisfiable line of the batch.
    """
    def __init__(self, shortages, message=SOLD_OUT_MESSAGE):
        self.shortages = list(shortages)
        super().__init__(message, status_code=400, payload={
            'code': 'insufficient_inventory',
            'unavailable': self.shortages,
        })


class InvalidStatusTransitionError(BusinessLogicError):
    def __init__(self, current, requested):
        super().__init__(
            f'Cannot change order status from {current} to {requested}',
            status_code=409,
        )


class OrderCreationError(DropShopError):
    """The order could not be persisted. Inventory has been compensated."""
    def __init__(self, message='Failed to place order'):
        super().__init__(message, 500)

    def to_dict(self):
        # Internal detail stays in the logs
        return {'error': 'Failed to place order'}


class OrderNumberCollisionError(OrderCreationError):
    def __init__(self, drop_id, sequence_number):
        super().__init__(
            f'Order number collision for drop {drop_id} sequence {sequence_number}'
        )


class PaymentGatewayError(DropShopError):
    """The payment processor rejected or failed a request."""
    def __init__(self, message='Payment provider error'):
        super().__init__(message, 502)
