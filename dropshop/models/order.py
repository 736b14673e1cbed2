"""Order model."""
import enum
from sqlalchemy import (
    Column, Integer, String, Text, Numeric, Date, DateTime, Enum, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dropshop.database import Base


class OrderStatus(str, enum.Enum):
    """Order status enum."""
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    PREPARED = 'prepared'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class PaymentMethod(str, enum.Enum):
    PAY_LATER = 'pay_later'
    STRIPE = 'stripe'


class Order(Base):
    """Customer order for one drop."""

    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('drop_id', 'sequence_number', name='uq_orders_drop_sequence'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(32), nullable=False, unique=True)
    public_code = Column(String(16), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    drop_id = Column(Integer, ForeignKey('drops.id'), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey('clients.id'), nullable=True)
    customer_name = Column(String(200), nullable=True)
    status = Column(
        Enum(OrderStatus, name='order_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    pickup_time = Column(String(20), nullable=False)
    pickup_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    special_instructions = Column(Text, nullable=True)

    # Idempotency key for Stripe webhook processing
    payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    payment_method = Column(
        Enum(PaymentMethod, name='order_payment_method', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PaymentMethod.PAY_LATER,
    )

    # Set once, by whoever returns this order's units to the ledger
    inventory_released_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    drop = relationship('Drop', back_populates='orders')
    client = relationship('Client', back_populates='orders')
    lines = relationship('OrderProduct', back_populates='order', order_by='OrderProduct.id')

    def __repr__(self):
        return f"<Order(id={self.id}, order_number='{self.order_number}', status={self.status.value})>"

    @property
    def reservation_items(self):
        """Ledger items this order holds, as (drop_product_id, quantity)."""
        return [(line.drop_product_id, line.order_quantity) for line in self.lines]

    def to_dict(self, include_lines=False):
        data = {
            'id': self.id,
            'order_number': self.order_number,
            'public_code': self.public_code,
            'drop_id': self.drop_id,
            'client_id': self.client_id,
            'customer_name': self.customer_name,
            'status': self.status.value,
            'pickup_time': self.pickup_time,
            'pickup_date': self.pickup_date.isoformat(),
            'total_amount': str(self.total_amount),
            'special_instructions': self.special_instructions,
            'payment_intent_id': self.payment_intent_id,
            'payment_method': self.payment_method.value,
        }
        if include_lines:
            data['items'] = [line.to_dict() for line in self.lines]
        return data
