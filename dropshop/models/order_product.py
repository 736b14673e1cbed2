"""Order Product model."""
from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dropshop.database import Base


class OrderProduct(Base):
    """Order line. Its quantity is exactly what the order reserved."""

    __tablename__ = 'order_products'
    __table_args__ = (
        CheckConstraint('order_quantity > 0', name='ck_order_products_quantity_positive'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    drop_product_id = Column(Integer, ForeignKey('drop_products.id', ondelete='RESTRICT'), nullable=False, index=True)
    order_quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    order = relationship('Order', back_populates='lines')
    drop_product = relationship('DropProduct')

    def __repr__(self):
        return f"<OrderProduct(id={self.id}, drop_product_id={self.drop_product_id}, qty={self.order_quantity})>"

    def to_dict(self):
        return {
            'drop_product_id': self.drop_product_id,
            'order_quantity': self.order_quantity,
            'unit_price': str(self.unit_price),
        }
