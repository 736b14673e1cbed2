"""Drop model."""
import enum
from sqlalchemy import Column, Integer, String, Text, Date, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dropshop.database import Base


class DropStatus(str, enum.Enum):
    """Drop lifecycle: upcoming -> active -> completed | cancelled."""
    UPCOMING = 'upcoming'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


TERMINAL_DROP_STATUSES = (DropStatus.COMPLETED, DropStatus.CANCELLED)


class Drop(Base):
    """A scheduled sale event at one location on one date."""

    __tablename__ = 'drops'

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    location_id = Column(Integer, ForeignKey('locations.id'), nullable=False)
    drop_number = Column(Integer, nullable=False, default=1)
    status = Column(
        Enum(DropStatus, name='drop_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DropStatus.UPCOMING,
        index=True,
    )
    pickup_deadline = Column(DateTime(timezone=True), nullable=True)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)
    last_modified_by = Column(String(255), nullable=True)
    # Last order sequence handed out for this drop
    next_order_sequence = Column(Integer, nullable=False, default=0, server_default='0')
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    location = relationship('Location', back_populates='drops')
    drop_products = relationship('DropProduct', back_populates='drop', order_by='DropProduct.id')
    orders = relationship('Order', back_populates='drop')

    def __repr__(self):
        return f"<Drop(id={self.id}, date={self.date}, status={self.status.value})>"

    def to_dict(self):
        return {
            'id': self.id,
            'date': self.date.isoformat(),
            'location_id': self.location_id,
            'drop_number': self.drop_number,
            'status': self.status.value,
            'pickup_deadline': self.pickup_deadline.isoformat() if self.pickup_deadline else None,
            'status_changed_at': self.status_changed_at.isoformat() if self.status_changed_at else None,
            'notes': self.notes,
        }
