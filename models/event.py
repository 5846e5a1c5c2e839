import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Enum, Text, Integer
from database.base import Base
import enum

class EventType(str, enum.Enum):
    DELIVERY_CREATED = "delivery_created"
    DELIVERY_PUBLISHED = "delivery_published"
    DELIVERY_ACCEPTED = "delivery_accepted"
    DELIVERY_STATUS_CHANGED = "delivery_status_changed"
    DELIVERY_CANCELLED = "delivery_cancelled"
    DELIVERY_RATED = "delivery_rated"
    BID_SUBMITTED = "bid_submitted"
    BID_ACCEPTED = "bid_accepted"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    REFUND_REQUESTED = "refund_requested"
    REFUND_UPDATED = "refund_updated"
    PARTNER_LOCATION_UPDATED = "partner_location_updated"

class DomainEvent(Base):
    """Outbox row written in the same transaction as the state change it describes."""
    __tablename__ = "domain_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    type = Column(Enum(EventType), nullable=False, index=True)

    # Related entities
    delivery_id = Column(String, nullable=True, index=True)
    recipient_id = Column(String, nullable=True, index=True)  # user to notify, if any

    payload = Column(Text, nullable=False, default="{}")  # JSON

    # Dispatch tracking
    dispatched_at = Column(DateTime, nullable=True, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<DomainEvent(type={self.type}, delivery_id={self.delivery_id})>"
