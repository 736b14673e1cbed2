"""Location model."""
from sqlalchemy import Column, Integer, String, Boolean, Time, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dropshop.database import Base


class Location(Base):
    """Pickup location where drops take place."""

    __tablename__ = 'locations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    # Prefix of public order codes, e.g. "IH" in #IH01-001
    code = Column(String(4), nullable=False, unique=True)
    district = Column(String(200), nullable=True)
    address = Column(String(255), nullable=True)
    location_url = Column(String(500), nullable=True)
    pickup_hour_start = Column(Time, nullable=True)
    pickup_hour_end = Column(Time, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    next_drop_number = Column(Integer, nullable=False, default=1, server_default='1')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    drops = relationship('Drop', back_populates='location')

    def __repr__(self):
        return f"<Location(id={self.id}, code='{self.code}', name='{self.name}')>"

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'district': self.district,
            'address': self.address,
            'location_url': self.location_url,
            'pickup_hour_start': self.pickup_hour_start.strftime('%H:%M') if self.pickup_hour_start else None,
            'pickup_hour_end': self.pickup_hour_end.strftime('%H:%M') if self.pickup_hour_end else None,
            'active': self.active,
        }
