"""Drop Product model - the stock ledger of one product in one drop."""
from sqlalchemy import (
    Column, Integer, Numeric, DateTime, ForeignKey, CheckConstraint, UniqueConstraint, case
)
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.sql import func
from dropshop.database import Base


class DropProduct(Base):
    """
    Sellable unit of a drop.

    stock_quantity is what the kitchen allocated to the drop and
    reserved_quantity is what pending and confirmed orders hold. Only the
    reservation and release operations in inventory_service touch
    reserved_quantity.
    """

    __tablename__ = 'drop_products'
    __table_args__ = (
        UniqueConstraint('drop_id', 'product_id', name='uq_drop_product_drop_product'),
        CheckConstraint('stock_quantity >= 0', name='ck_drop_product_stock_non_negative'),
        CheckConstraint('reserved_quantity >= 0', name='ck_drop_product_reserved_non_negative'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    drop_id = Column(Integer, ForeignKey('drops.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0, server_default='0')
    reserved_quantity = Column(Integer, nullable=False, default=0, server_default='0')
    # Snapshot taken when the menu was built
    selling_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    drop = relationship('Drop', back_populates='drop_products')
    product = relationship('Product')

    @hybrid_property
    def available_quantity(self):
        """Units still sellable, never negative."""
        return max((self.stock_quantity or 0) - (self.reserved_quantity or 0), 0)

    @available_quantity.expression
    def available_quantity(cls):
        return case(
            (cls.stock_quantity > cls.reserved_quantity, cls.stock_quantity - cls.reserved_quantity),
            else_=0,
        )

    def __repr__(self):
        return (
            f"<DropProduct(id={self.id}, drop_id={self.drop_id}, product_id={self.product_id}, "
            f"stock={self.stock_quantity}, reserved={self.reserved_quantity})>"
        )

    def to_dict(self, include_product=False):
        data = {
            'id': self.id,
            'drop_id': self.drop_id,
            'product_id': self.product_id,
            'stock_quantity': self.stock_quantity,
            'reserved_quantity': self.reserved_quantity,
            'available_quantity': self.available_quantity,
            'selling_price': str(self.selling_price),
        }
        if include_product and self.product is not None:
            data['product'] = self.product.to_dict()
        return data
