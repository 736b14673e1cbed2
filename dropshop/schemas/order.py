from datetime import date
from decimal import Decimal
from typing import List, Optional, Iterable
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator

from dropshop.models import OrderStatus


class ReservationItem(BaseModel):
    """One ledger line: reserve or release `quantity` units of a drop product."""
    model_config = ConfigDict(frozen=True)

    drop_product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


def merge_reservation_items(items: Iterable) -> List[ReservationItem]:
    """
    Normalise a batch: accept ReservationItems or (id, qty) pairs, sum
    duplicate ids and sort by id so concurrent batches lock rows in the
    same order.
    """
    totals = {}
    for item in items:
        if not isinstance(item, ReservationItem):
            drop_product_id, quantity = item
            item = ReservationItem(drop_product_id=drop_product_id, quantity=quantity)
        totals[item.drop_product_id] = totals.get(item.drop_product_id, 0) + item.quantity
    return [
        ReservationItem(drop_product_id=dp_id, quantity=qty)
        for dp_id, qty in sorted(totals.items())
    ]


class CartItem(BaseModel):
    """Cart line as sent by the storefront. `id` is the drop_product id."""
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0, le=100)
    name: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)

    def to_reservation_item(self) -> ReservationItem:
        return ReservationItem(drop_product_id=self.id, quantity=self.quantity)


class CustomerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)
    pickup_time: str = Field(..., alias='pickupTime', min_length=1, max_length=20)
    pickup_date: date = Field(..., alias='pickupDate')
    special_instructions: Optional[str] = Field(None, alias='specialInstructions', max_length=1000)


class OrderCreateRequest(BaseModel):
    """Body of POST /api/orders."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    customer_name: str = Field(..., alias='customerName', min_length=2, max_length=200)
    customer_email: EmailStr = Field(..., alias='customerEmail')
    customer_phone: Optional[str] = Field(None, alias='customerPhone', max_length=50)
    pickup_time: str = Field(..., alias='pickupTime', min_length=1, max_length=20)
    pickup_date: date = Field(..., alias='pickupDate')
    items: List[CartItem] = Field(..., min_length=1)
    special_instructions: Optional[str] = Field(None, alias='specialInstructions', max_length=1000)
    total_amount: Optional[Decimal] = Field(None, alias='totalAmount', ge=0)

    @field_validator('customer_phone', 'special_instructions')
    @classmethod
    def blank_to_none(cls, value):
        return value or None

    @classmethod
    def from_customer_info(cls, customer: CustomerInfo, items: List[CartItem], total_amount=None):
        return cls(
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            pickup_time=customer.pickup_time,
            pickup_date=customer.pickup_date,
            items=items,
            special_instructions=customer.special_instructions,
            total_amount=total_amount,
        )

    @property
    def reservation_items(self) -> List[ReservationItem]:
        return merge_reservation_items(item.to_reservation_item() for item in self.items)


class OrderStatusUpdateRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def known_status(cls, value):
        try:
            return OrderStatus(value).value
        except ValueError:
            allowed = ', '.join(s.value for s in OrderStatus)
            raise ValueError(f'must be one of: {allowed}')

