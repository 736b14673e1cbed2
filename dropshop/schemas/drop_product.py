from datetime import date
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from dropshop.models import DropStatus


class DropMenuItem(BaseModel):
    product_id: int = Field(..., gt=0)
    stock_quantity: int = Field(..., ge=0)
    selling_price: Decimal = Field(..., gt=0)


class DropMenuUpdateRequest(BaseModel):
    """Body of PUT /api/drops/<id>/drop-products. The full desired menu."""
    model_config = {'populate_by_name': True}

    drop_products: List[DropMenuItem] = Field(..., alias='dropProducts')

    @field_validator('drop_products')
    @classmethod
    def unique_products(cls, value):
        seen = set()
        for item in value:
            if item.product_id in seen:
                raise ValueError(f'product {item.product_id} appears more than once')
            seen.add(item.product_id)
        return value


class DropStatusChangeRequest(BaseModel):
    model_config = {'populate_by_name': True}

    new_status: str = Field(..., alias='newStatus')
    modified_by: Optional[str] = Field(None, alias='modifiedBy')

    @field_validator('new_status')
    @classmethod
    def known_status(cls, value):
        try:
            return DropStatus(value).value
        except ValueError:
            raise ValueError('Invalid status. Must be one of: upcoming, active, completed, cancelled')


class DeadlineRequest(BaseModel):
    model_config = {'populate_by_name': True}

    drop_date: date = Field(..., alias='dropDate')
    location_id: int = Field(..., alias='locationId', gt=0)
