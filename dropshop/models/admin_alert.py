"""
Admin alert model.

Persisted side of the admin notification channel: every alert is stored
here and also emailed, so a failed email never loses the alert.
"""
import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from dropshop.database import Base


class AlertSeverity(str, enum.Enum):
    INFO = 'INFO'
    WARNING = 'WARNING'
    CRITICAL = 'CRITICAL'


class AlertKind(str, enum.Enum):
    PAYMENT_FAILED = 'PAYMENT_FAILED'
    RESERVATION_AFTER_PAYMENT_FAILED = 'RESERVATION_AFTER_PAYMENT_FAILED'
    COMPENSATION_FAILED = 'COMPENSATION_FAILED'
    RELEASE_FAILED = 'RELEASE_FAILED'
    LEDGER_DRIFT = 'LEDGER_DRIFT'


class AdminAlert(Base):
    __tablename__ = 'admin_alert'

    id = Column(Integer, primary_key=True, autoincrement=True)
    severity = Column(String(20), nullable=False, index=True)
    kind = Column(String(50), nullable=False, index=True)
    message = Column(Text, nullable=False)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='SET NULL'), nullable=True)
    details_json = Column(JSON().with_variant(JSONB, 'postgresql'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<AdminAlert(id={self.id}, severity='{self.severity}', kind='{self.kind}')>"

    def to_dict(self):
        return {
            'id': self.id,
            'severity': self.severity,
            'kind': self.kind,
            'message': self.message,
            'payment_intent_id': self.payment_intent_id,
            'order_id': self.order_id,
            'details': self.details_json,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }
