"""
Payment ledger, refunds, payouts and the partner rating aggregate.

``Payment.gateway_event_id`` is the idempotency key for everything the payment
gateway reports: a replayed callback finds the existing record (or loses the
INSERT race on the unique constraint) and is answered with ``created=False``.
A delivery is settled by at most one completed payment; a later success event
for it, under any event id, is answered with that payment.

``settle_delivery_completion`` and ``request_refund`` are staged inside the
lifecycle transaction and never commit on their own.
"""
from sqlalchemy import desc
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from dataclasses import dataclass
from typing import Any, Dict, Optional
from datetime import datetime, timedelta
import logging

from core.constants import PARTNER_PAYOUT_RATIO
from core.exceptions import (
    ResourceNotFoundError, AuthorizationError, StateConflictError, ValidationError
)
from models.user import UserRole
from models.partner import Partner
from models.delivery import (
    Delivery, DeliveryStatus, PaymentMethod, PaymentStatus, RefundStatus, TimelineEntry
)
from models.payment import Payment, PaymentGateway, PayoutStatus, LedgerRefundStatus
from models.event import EventType
from schemas.payment import RefundResult, PayoutResult
from services.deliveries import get_delivery
from services.events import record_event

logger = logging.getLogger(__name__)

GATEWAY_BY_METHOD = {
    PaymentMethod.CASH: PaymentGateway.CASH,
    PaymentMethod.WALLET: PaymentGateway.WALLET,
    PaymentMethod.CARD: PaymentGateway.STRIPE,
    PaymentMethod.UPI: PaymentGateway.STRIPE,
}


@dataclass
class SettlementResult:
    payment: Payment
    created: bool


def compute_partner_payout(amount: float) -> float:
    return round(amount * PARTNER_PAYOUT_RATIO, 2)


def completion_event_id(delivery_id: str) -> str:
    return f"delivery:{delivery_id}:completion"


def get_payment_by_event(db: Session, gateway_event_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.gateway_event_id == gateway_event_id).first()


def completed_payment_for(db: Session, delivery_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(
        Payment.delivery_id == delivery_id,
        Payment.status == PaymentStatus.COMPLETED
    ).order_by(Payment.created_at.desc()).first()


def _new_payment(
    delivery: Delivery,
    gateway_event_id: str,
    amount: float,
    method: PaymentMethod,
    status: PaymentStatus,
    gateway: Optional[PaymentGateway] = None,
    gateway_payment_id: Optional[str] = None,
    description: Optional[str] = None
) -> Payment:
    payment = Payment(
        delivery_id=delivery.id,
        customer_id=delivery.customer_id,
        partner_id=delivery.partner_id,
        amount=amount,
        currency=delivery.currency,
        method=method,
        status=status,
        gateway=gateway or GATEWAY_BY_METHOD[method],
        gateway_payment_id=gateway_payment_id,
        gateway_event_id=gateway_event_id,
        description=description or f"Payment for delivery {delivery.tracking_id}",
    )
    if status == PaymentStatus.COMPLETED:
        payment.payout_amount = compute_partner_payout(amount)
        payment.payout_status = PayoutStatus.PENDING
    return payment


def _replayed(db: Session, gateway_event_id: str, delivery_id: str) -> Optional[SettlementResult]:
    existing = get_payment_by_event(db, gateway_event_id)
    if existing is None:
        return None
    if existing.delivery_id != delivery_id:
        raise StateConflictError(
            "Gateway event already recorded for another delivery",
            details={"gateway_event_id": gateway_event_id, "delivery_id": existing.delivery_id}
        )
    logger.info(f"Gateway event {gateway_event_id} already settled as payment {existing.id}")
    return SettlementResult(payment=existing, created=False)


def confirm_payment(
    db: Session,
    delivery_id: str,
    gateway_event_id: str,
    amount: Optional[float] = None,
    method: Optional[PaymentMethod] = None,
    gateway: Optional[PaymentGateway] = None,
    gateway_payment_id: Optional[str] = None,
    actor_id: Optional[str] = None
) -> SettlementResult:
    """Record a successful payment for a delivery, once per gateway event and at most once per delivery."""
    delivery = get_delivery(db, delivery_id)
    if actor_id is not None and delivery.customer_id != actor_id:
        raise AuthorizationError(
            "Not authorized to confirm payment for this delivery",
            details={"delivery_id": delivery_id}
        )

    replay = _replayed(db, gateway_event_id, delivery_id)
    if replay is not None:
        return replay

    if delivery.status == DeliveryStatus.CANCELLED:
        raise StateConflictError(
            "Cannot take payment for a cancelled delivery",
            current=delivery.status.value,
            details={"delivery_id": delivery_id}
        )

    settled = completed_payment_for(db, delivery_id)
    if settled is not None:
        logger.info(
            f"Delivery {delivery_id} already settled as payment {settled.id}, "
            f"gateway event {gateway_event_id} not recorded"
        )
        return SettlementResult(payment=settled, created=False)

    method = method or delivery.payment_method
    amount = amount if amount is not None else delivery.total_price
    now = datetime.utcnow()

    payment = _new_payment(
        delivery, gateway_event_id, amount, method, PaymentStatus.COMPLETED,
        gateway=gateway, gateway_payment_id=gateway_payment_id
    )

    try:
        db.add(payment)
        delivery.payment_status = PaymentStatus.COMPLETED
        delivery.payment_transaction_id = gateway_payment_id or delivery.payment_transaction_id
        delivery.paid_at = delivery.paid_at or now
        db.flush()
        record_event(
            db, EventType.PAYMENT_SETTLED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            payment_id=payment.id,
            amount=amount,
            method=method,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Concurrent settlement for gateway event {gateway_event_id}: {str(e)}")
        replay = _replayed(db, gateway_event_id, delivery_id)
        if replay is not None:
            return replay
        settled = completed_payment_for(db, delivery_id)
        if settled is None:
            raise
        return SettlementResult(payment=settled, created=False)
    except Exception as e:
        db.rollback()
        logger.error(f"Error confirming payment for delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(payment)
    logger.info(f"Payment {payment.id} recorded for delivery {delivery_id}: {amount} via {method.value}")
    return SettlementResult(payment=payment, created=True)


def record_payment_failure(
    db: Session,
    delivery_id: str,
    gateway_event_id: str,
    amount: float,
    method: PaymentMethod = PaymentMethod.CARD,
    gateway: Optional[PaymentGateway] = None,
    gateway_payment_id: Optional[str] = None,
    failure_message: Optional[str] = None
) -> SettlementResult:
    """Record a failed gateway charge; an earlier success on the delivery is left untouched."""
    delivery = get_delivery(db, delivery_id)

    replay = _replayed(db, gateway_event_id, delivery_id)
    if replay is not None:
        return replay

    payment = _new_payment(
        delivery, gateway_event_id, amount, method, PaymentStatus.FAILED,
        gateway=gateway, gateway_payment_id=gateway_payment_id,
        description=failure_message
    )

    try:
        db.add(payment)
        if delivery.payment_status == PaymentStatus.PENDING:
            delivery.payment_status = PaymentStatus.FAILED
        db.flush()
        record_event(
            db, EventType.PAYMENT_FAILED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            payment_id=payment.id,
            amount=amount,
            message=failure_message,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Concurrent failure record for gateway event {gateway_event_id}: {str(e)}")
        existing = get_payment_by_event(db, gateway_event_id)
        if existing is None:
            raise
        return SettlementResult(payment=existing, created=False)
    except Exception as e:
        db.rollback()
        logger.error(f"Error recording payment failure for delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(payment)
    logger.warning(f"Payment failed for delivery {delivery_id}: {failure_message}")
    return SettlementResult(payment=payment, created=True)


def settle_delivery_completion(db: Session, delivery: Delivery, now: datetime) -> Optional[Payment]:
    """Payment bookkeeping when a delivery is completed; staged, not committed.

    Cash is collected by the partner, so the delivery is marked paid without a
    ledger record. Other methods get exactly one completion record unless a
    gateway payment already settled the delivery.
    """
    delivery.payment_status = PaymentStatus.COMPLETED
    delivery.paid_at = delivery.paid_at or now

    if delivery.payment_method == PaymentMethod.CASH:
        logger.info(f"Delivery {delivery.id} settled in cash")
        return None

    existing = completed_payment_for(db, delivery.id)
    if existing is not None:
        return existing

    payment = _new_payment(
        delivery, completion_event_id(delivery.id), delivery.total_price,
        delivery.payment_method, PaymentStatus.COMPLETED
    )
    db.add(payment)
    db.flush()
    record_event(
        db, EventType.PAYMENT_SETTLED,
        delivery_id=delivery.id,
        recipient_id=delivery.customer_id,
        payment_id=payment.id,
        amount=payment.amount,
        method=payment.method,
    )
    return payment


def request_refund(db: Session, delivery: Delivery, reason: Optional[str], now: datetime) -> Optional[Payment]:
    """Open a pending refund for a paid delivery; staged, not committed."""
    delivery.refund_status = RefundStatus.PENDING

    payment = completed_payment_for(db, delivery.id)
    if payment is not None:
        payment.refund_amount = delivery.total_price
        payment.refund_reason = reason
        payment.refund_status = LedgerRefundStatus.PENDING
        payment.updated_at = now

    record_event(
        db, EventType.REFUND_REQUESTED,
        delivery_id=delivery.id,
        recipient_id=delivery.customer_id,
        amount=delivery.total_price,
        reason=reason,
    )
    logger.info(f"Refund of {delivery.total_price} requested for delivery {delivery.id}")
    return payment


def record_refund_result(db: Session, delivery_id: str, result: RefundResult) -> Delivery:
    """Apply the gateway's refund outcome. A failed refund may be retried; a processed one is final."""
    delivery = get_delivery(db, delivery_id)
    current = delivery.refund_status

    if current not in (RefundStatus.PENDING, RefundStatus.FAILED):
        raise StateConflictError(
            "No refund is awaiting a result for this delivery",
            current=current.value if current else None,
            details={"delivery_id": delivery_id}
        )

    new_status = RefundStatus.PROCESSED if result.succeeded else RefundStatus.FAILED
    now = datetime.utcnow()

    rows = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.refund_status == current
    ).update({Delivery.refund_status: new_status, Delivery.updated_at: now})

    if rows != 1:
        db.rollback()
        raise StateConflictError(
            "Refund status changed concurrently, reload and retry",
            current=current.value,
            requested=new_status.value,
            details={"delivery_id": delivery_id}
        )

    try:
        if result.succeeded:
            delivery.payment_status = PaymentStatus.REFUNDED

        payment = completed_payment_for(db, delivery_id)
        if payment is not None:
            payment.refund_status = LedgerRefundStatus.PROCESSED if result.succeeded else LedgerRefundStatus.FAILED
            payment.refund_transaction_id = result.transaction_id
            payment.refund_processed_at = now

        record_event(
            db, EventType.REFUND_UPDATED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            refund_status=new_status,
            transaction_id=result.transaction_id,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error recording refund result for delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Refund for delivery {delivery_id} is {new_status.value}")
    return delivery


def mark_payout_processed(db: Session, payment_id: str, result: PayoutResult) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise ResourceNotFoundError("Payment", payment_id)

    current = payment.payout_status
    if current not in (PayoutStatus.PENDING, PayoutStatus.FAILED):
        raise StateConflictError(
            "Payout is not awaiting processing",
            current=current.value if current else None,
            details={"payment_id": payment_id}
        )

    payment.payout_status = PayoutStatus.COMPLETED if result.succeeded else PayoutStatus.FAILED
    payment.payout_transaction_id = result.transaction_id
    payment.payout_processed_at = datetime.utcnow()
    db.commit()
    db.refresh(payment)

    logger.info(f"Payout for payment {payment_id} is {payment.payout_status.value}")
    return payment


def rate_delivery(
    db: Session,
    customer_id: str,
    delivery_id: str,
    rating: int,
    comment: Optional[str] = None
) -> Delivery:
    """Rate a delivered delivery once and fold the score into the partner's average."""
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5", field="rating")

    delivery = get_delivery(db, delivery_id)
    if delivery.customer_id != customer_id:
        raise AuthorizationError("Not authorized to rate this delivery", details={"delivery_id": delivery_id})
    if delivery.status != DeliveryStatus.DELIVERED:
        raise StateConflictError(
            "Only delivered deliveries can be rated",
            current=delivery.status.value,
            details={"delivery_id": delivery_id}
        )
    if delivery.rating_value is not None:
        raise StateConflictError("This delivery has already been rated", details={"delivery_id": delivery_id})

    now = datetime.utcnow()
    rows = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.status == DeliveryStatus.DELIVERED,
        Delivery.rating_value.is_(None)
    ).update({
        Delivery.rating_value: rating,
        Delivery.rating_comment: comment,
        Delivery.rated_at: now,
    })

    if rows != 1:
        db.rollback()
        raise StateConflictError("This delivery has already been rated", details={"delivery_id": delivery_id})

    try:
        if delivery.partner_id is not None:
            # Both SET expressions read the pre-update row
            db.query(Partner).filter(Partner.id == delivery.partner_id).update({
                Partner.rating: (Partner.rating * Partner.total_ratings + rating) / (Partner.total_ratings + 1),
                Partner.total_ratings: Partner.total_ratings + 1,
            }, synchronize_session=False)

        record_event(
            db, EventType.DELIVERY_RATED,
            delivery_id=delivery.id,
            recipient_id=delivery.partner.user_id if delivery.partner else None,
            rating=rating,
            comment=comment,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error rating delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Delivery {delivery_id} rated {rating}")
    return delivery


def partner_earnings(db: Session, partner_id: str, since: Optional[datetime] = None, days: int = 30) -> Dict[str, Any]:
    """Partner share of delivered totals, bucketed by delivery day."""
    since = since or (datetime.utcnow() - timedelta(days=days))

    rows = db.query(Delivery.total_price, TimelineEntry.timestamp).join(
        TimelineEntry, TimelineEntry.delivery_id == Delivery.id
    ).filter(
        Delivery.partner_id == partner_id,
        Delivery.status == DeliveryStatus.DELIVERED,
        TimelineEntry.status == DeliveryStatus.DELIVERED.value,
        TimelineEntry.timestamp >= since
    ).all()

    by_day: Dict[str, Dict[str, Any]] = {}
    total = 0.0
    for total_price, delivered_at in rows:
        share = compute_partner_payout(total_price)
        day = delivered_at.date().isoformat()
        bucket = by_day.setdefault(day, {"date": day, "deliveries": 0, "earnings": 0.0})
        bucket["deliveries"] += 1
        bucket["earnings"] = round(bucket["earnings"] + share, 2)
        total += share

    return {
        "partner_id": partner_id,
        "since": since,
        "total_deliveries": len(rows),
        "total_earnings": round(total, 2),
        "earnings_by_day": [by_day[day] for day in sorted(by_day)],
    }


def list_customer_payments(db: Session, customer_id: str, page: int = 1, per_page: int = 10):
    query = db.query(Payment).filter(Payment.customer_id == customer_id)
    total = query.count()
    payments = query.order_by(desc(Payment.created_at)).offset((page - 1) * per_page).limit(per_page).all()
    return payments, total


def get_payment(db: Session, payment_id: str, actor_id: str, actor_role: UserRole) -> Payment:
    """Load a payment for its customer, the partner it pays out to, or an admin."""
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise ResourceNotFoundError("Payment", payment_id)

    if actor_role == UserRole.ADMIN or payment.customer_id == actor_id:
        return payment

    if payment.partner_id is not None:
        partner = db.query(Partner).filter(Partner.id == payment.partner_id).first()
        if partner is not None and partner.user_id == actor_id:
            return payment

    raise AuthorizationError("Not authorized to view this payment", details={"payment_id": payment_id})
