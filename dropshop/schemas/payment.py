import json
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator

from dropshop.schemas.order import CartItem, CustomerInfo


class CreateIntentRequest(BaseModel):
    """Body of POST /api/payment/create-intent."""
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartItem] = Field(..., min_length=1)
    customer_info: CustomerInfo = Field(..., alias='customerInfo')
    drop_id: Optional[int] = Field(None, alias='dropId')

    @field_validator('items')
    @classmethod
    def priced_items(cls, value):
        for index, item in enumerate(value, start=1):
            if not item.name:
                raise ValueError(f'Item {index}: Name is required')
        return value


class AvailabilityCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: Optional[str] = Field(None, alias='paymentIntentId')
    items: Optional[List[CartItem]] = None

    @model_validator(mode='after')
    def one_source(self):
        if not self.payment_intent_id and not self.items:
            raise ValueError('paymentIntentId or items is required')
        return self


class PaymentIntentMetadata(BaseModel):
    """
    Metadata we attach to every PaymentIntent. Stripe only stores strings,
    so the cart travels as JSON in `cartItems`.
    """
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str = Field(..., alias='customerName')
    customer_email: EmailStr = Field(..., alias='customerEmail')
    customer_phone: Optional[str] = Field(None, alias='customerPhone')
    pickup_time: str = Field(..., alias='pickupTime')
    pickup_date: str = Field(..., alias='pickupDate')
    special_instructions: Optional[str] = Field(None, alias='specialInstructions')
    total_amount: Decimal = Field(..., alias='totalAmount')
    drop_id: int = Field(..., alias='dropId')
    cart_items: List[CartItem] = Field(..., alias='cartItems', min_length=1)

    @field_validator('cart_items', mode='before')
    @classmethod
    def decode_cart(cls, value):
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                raise ValueError('cartItems is not valid JSON')
        return value

    @field_validator('customer_phone', 'special_instructions', mode='before')
    @classmethod
    def blank_to_none(cls, value):
        return value or None

    def to_stripe(self) -> Dict[str, str]:
        return {
            'customerName': self.customer_name,
            'customerEmail': str(self.customer_email),
            'customerPhone': self.customer_phone or '',
            'pickupTime': self.pickup_time,
            'pickupDate': self.pickup_date,
            'specialInstructions': self.special_instructions or '',
            'totalAmount': str(self.total_amount),
            'dropId': str(self.drop_id),
            'cartItems': json.dumps([
                {'id': item.id, 'name': item.name, 'quantity': item.quantity,
                 'price': str(item.price) if item.price is not None else None}
                for item in self.cart_items
            ]),
        }

    def to_customer_info(self) -> CustomerInfo:
        return CustomerInfo(
            name=self.customer_name,
            email=self.customer_email,
            phone=self.customer_phone,
            pickup_time=self.pickup_time,
            pickup_date=self.pickup_date,
            special_instructions=self.special_instructions,
        )


class StripePaymentIntent(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: str
    amount: Optional[int] = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_payment_error: Optional[Dict[str, Any]] = None

    @property
    def failure_message(self) -> str:
        return (self.last_payment_error or {}).get('message') or 'Unknown payment error'


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra='ignore')

    object: Dict[str, Any]


class StripeEvent(BaseModel):
    """Verified Stripe event envelope."""
    model_config = ConfigDict(extra='ignore')

    id: str
    type: str
    data: StripeEventData

    @property
    def payment_intent(self) -> StripePaymentIntent:
        return StripePaymentIntent.model_validate(self.data.object)
