import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Enum, Float, ForeignKey, Text, Index
from sqlalchemy.orm import relationship
from database.base import Base
from models.delivery import PaymentMethod, PaymentStatus
import enum

class PaymentGateway(str, enum.Enum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    CASH = "cash"
    WALLET = "wallet"

class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class LedgerRefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

class Payment(Base):
    """Ledger entry for one settlement attempt of a delivery.

    ``gateway_event_id`` is the idempotency key: a replayed gateway callback
    hits the unique constraint instead of creating a second record.
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    delivery_id = Column(String, ForeignKey("deliveries.id"), nullable=False, index=True)
    customer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    partner_id = Column(String, ForeignKey("partners.id"), nullable=True, index=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False, default="INR")
    method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    gateway = Column(Enum(PaymentGateway), nullable=False)
    gateway_payment_id = Column(String, nullable=True)
    gateway_event_id = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    # Partner payout
    payout_amount = Column(Float, nullable=True)
    payout_status = Column(Enum(PayoutStatus), nullable=True)
    payout_transaction_id = Column(String, nullable=True)
    payout_processed_at = Column(DateTime, nullable=True)

    # Refund
    refund_amount = Column(Float, nullable=True)
    refund_reason = Column(String(500), nullable=True)
    refund_status = Column(Enum(LedgerRefundStatus), nullable=True)
    refund_transaction_id = Column(String, nullable=True)
    refund_processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    delivery = relationship("Delivery", back_populates="payments")

    def __repr__(self):
        return f"<Payment(id={self.id}, delivery_id={self.delivery_id}, status={self.status})>"

    @property
    def partner_payout(self):
        if self.payout_amount is None:
            return None
        return {
            "amount": self.payout_amount,
            "status": self.payout_status,
            "transaction_id": self.payout_transaction_id,
            "processed_at": self.payout_processed_at,
        }

    @property
    def refund(self):
        if self.refund_status is None:
            return None
        return {
            "amount": self.refund_amount,
            "reason": self.refund_reason,
            "status": self.refund_status,
            "transaction_id": self.refund_transaction_id,
            "processed_at": self.refund_processed_at,
        }


# At most one completed payment per delivery, enforced by the database
Index(
    "uq_payments_one_completed_per_delivery",
    Payment.delivery_id,
    unique=True,
    sqlite_where=Payment.status == PaymentStatus.COMPLETED,
    postgresql_where=Payment.status == PaymentStatus.COMPLETED,
)
