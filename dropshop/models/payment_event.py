"""Stripe webhook event log for idempotency."""
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from dropshop.database import Base


class PaymentEventStatus(str, enum.Enum):
    RECEIVED = 'RECEIVED'
    PROCESSED = 'PROCESSED'
    IGNORED = 'IGNORED'
    FAILED = 'FAILED'
    NEEDS_ATTENTION = 'NEEDS_ATTENTION'


# Outcomes after which a redelivery must not run the handler again
FINAL_EVENT_STATUSES = (
    PaymentEventStatus.PROCESSED.value,
    PaymentEventStatus.IGNORED.value,
    PaymentEventStatus.NEEDS_ATTENTION.value,
)


class PaymentEvent(Base):
    """Stripe webhook delivery log. One row per Stripe event id."""
    __tablename__ = 'payment_event'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payload_json = Column(JSON().with_variant(JSONB, 'postgresql'), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentEventStatus.RECEIVED.value, index=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    processed_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<PaymentEvent(event_id='{self.event_id}', type='{self.event_type}', status='{self.status}')>"

    @property
    def is_final(self):
        return self.status in FINAL_EVENT_STATUSES
