from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime

from models.delivery import PaymentMethod, PaymentStatus
from models.payment import PaymentGateway


class PaymentConfirm(BaseModel):
    delivery_id: str
    gateway_event_id: str = Field(..., min_length=1, max_length=255)
    gateway_payment_id: Optional[str] = None
    amount: Optional[float] = Field(None, gt=0)
    payment_method: Optional[PaymentMethod] = None


class GatewayWebhookEvent(BaseModel):
    """A gateway callback whose signature has already been verified upstream."""
    event_id: str = Field(..., min_length=1, max_length=255)
    type: str
    delivery_id: str
    amount: float = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.CARD
    gateway: PaymentGateway = PaymentGateway.STRIPE
    gateway_payment_id: Optional[str] = None
    failure_message: Optional[str] = None


class RefundResult(BaseModel):
    succeeded: bool
    transaction_id: Optional[str] = None


class PayoutResult(BaseModel):
    succeeded: bool
    transaction_id: Optional[str] = None


class PaymentResponse(BaseModel):
    id: str
    delivery_id: str
    customer_id: str
    partner_id: Optional[str] = None
    amount: float
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    gateway: PaymentGateway
    gateway_payment_id: Optional[str] = None
    gateway_event_id: str
    partner_payout: Optional[Dict[str, Any]] = None
    refund: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
