from datetime import date, time
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dropshop.models import DropStatus, ProductCategory


class DropCreateRequest(BaseModel):
    """Body of POST /api/drops."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    drop_date: date = Field(..., alias='date')
    location_id: int = Field(..., gt=0)
    status: DropStatus = DropStatus.UPCOMING
    notes: Optional[str] = Field(None, max_length=2000)
    modified_by: Optional[str] = Field(None, alias='modifiedBy', max_length=255)


class DropUpdateRequest(DropCreateRequest):
    """Body of PUT /api/drops/<id>. Same fields, status is kept when omitted."""
    status: Optional[DropStatus] = None


class ProductCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: ProductCategory = ProductCategory.SANDWICH
    sell_price: Decimal = Field(..., gt=0)
    production_cost: Decimal = Field(Decimal('0'), ge=0)
    active: bool = True
    sort_order: int = 0


class LocationCreateRequest(BaseModel):
    """Body of POST /api/locations and PUT /api/locations/<id>."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., pattern=r'^[A-Za-z]{1,4}$')
    district: str = Field(..., min_length=1, max_length=200)
    address: str = Field(..., min_length=1, max_length=255)
    location_url: Optional[str] = Field(None, max_length=500)
    pickup_hour_start: Optional[time] = None
    pickup_hour_end: Optional[time] = None
    active: bool = True

    @field_validator('code')
    @classmethod
    def upper_code(cls, value):
        return value.upper()
