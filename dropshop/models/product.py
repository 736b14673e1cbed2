"""Product model."""
import enum
from sqlalchemy import Column, Integer, String, Text, Boolean, Numeric, DateTime, Enum
from sqlalchemy.sql import func
from dropshop.database import Base


class ProductCategory(str, enum.Enum):
    SANDWICH = 'sandwich'
    SIDE = 'side'
    DESSERT = 'dessert'
    BEVERAGE = 'beverage'


class Product(Base):
    """Master catalogue entry. Prices here are defaults, drops snapshot their own."""

    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(
        Enum(ProductCategory, name='product_category', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ProductCategory.SANDWICH,
    )
    sell_price = Column(Numeric(10, 2), nullable=False)
    production_cost = Column(Numeric(10, 2), nullable=False, default=0, server_default='0.00')
    active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default='0')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}')>"

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category.value if self.category else None,
            'sell_price': str(self.sell_price),
            'active': self.active,
            'sort_order': self.sort_order,
        }
