"""
Delivery lifecycle state machine.

``TRANSITIONS`` is the only place that decides which status may follow which
once a partner is assigned. Assignment itself (pending/searching -> accepted)
belongs to ``services.matching``.

Every transition is written as a conditional UPDATE on the status it was
validated against, so two racing requests cannot both apply. The timeline
entry, partner counters and settlement bookkeeping are staged in the same
transaction and committed together.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict, FrozenSet, Optional, Union
from datetime import datetime
import logging

from core.exceptions import (
    ResourceNotFoundError, AuthorizationError, StateConflictError, ValidationError
)
from models.user import UserRole
from models.partner import Partner, AvailabilityStatus
from models.delivery import (
    Delivery, DeliveryStatus, CancelledBy, RefundStatus, BidStatus, PaymentStatus,
    ACTIVE_STATUSES, TERMINAL_STATUSES
)
from models.event import EventType
from services import settlement
from services.deliveries import get_delivery
from services.events import record_event
from services.partner import get_partner

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.ACCEPTED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.ARRIVING, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ARRIVING: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
}

STATUS_DESCRIPTIONS = {
    DeliveryStatus.PICKED_UP: "Package picked up",
    DeliveryStatus.IN_TRANSIT: "Delivery in transit",
    DeliveryStatus.ARRIVING: "Partner arriving at drop location",
    DeliveryStatus.DELIVERED: "Delivery completed",
    DeliveryStatus.CANCELLED: "Delivery cancelled",
}

DEFAULT_CANCEL_REASONS = {
    CancelledBy.USER: "Cancelled by user",
    CancelledBy.PARTNER: "Cancelled by partner",
    CancelledBy.ADMIN: "Cancelled by admin",
    CancelledBy.SYSTEM: "Cancelled by system",
}


def allowed_next_statuses(current: DeliveryStatus) -> FrozenSet[DeliveryStatus]:
    return TRANSITIONS.get(current, frozenset())


def can_transition(current: DeliveryStatus, requested: DeliveryStatus) -> bool:
    """Partner-driven transitions; cancellation is legal from any non-terminal status."""
    if requested == DeliveryStatus.CANCELLED:
        return current not in TERMINAL_STATUSES
    return requested in allowed_next_statuses(current)


def _coerce_status(value: Union[DeliveryStatus, str]) -> DeliveryStatus:
    try:
        return DeliveryStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown delivery status '{value}'", field="status")


def _coerce_cancelled_by(role: Union[CancelledBy, UserRole, str]) -> CancelledBy:
    if role in (UserRole.CUSTOMER, CancelledBy.USER):
        return CancelledBy.USER
    if role in (UserRole.PARTNER, CancelledBy.PARTNER):
        return CancelledBy.PARTNER
    if role in (UserRole.ADMIN, CancelledBy.ADMIN):
        return CancelledBy.ADMIN
    if role == CancelledBy.SYSTEM:
        return CancelledBy.SYSTEM
    raise ValidationError(f"Unknown actor role '{role}'", field="role")


def _best_location(partner: Optional[Partner], location: Optional[Dict[str, Any]]):
    if location and location.get("coordinates"):
        return {
            "coordinates": location["coordinates"],
            "address": location.get("address") or (partner.current_address if partner else None),
        }
    return partner.current_location if partner is not None else None


def _conflict(delivery: Delivery, current: DeliveryStatus, requested: DeliveryStatus, message: str = None):
    return StateConflictError(
        message or f"Invalid status transition from {current.value} to {requested.value}",
        current=current.value,
        requested=requested.value,
        details={"delivery_id": delivery.id}
    )


def update_delivery_status(
    db: Session,
    partner_id: str,
    delivery_id: str,
    new_status: Union[DeliveryStatus, str],
    location: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None
) -> Delivery:
    """Advance an assigned delivery one step along the lifecycle."""
    requested = _coerce_status(new_status)

    delivery = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.partner_id == partner_id
    ).first()
    if not delivery:
        raise ResourceNotFoundError("Delivery", delivery_id)

    partner = get_partner(db, partner_id)

    if requested == DeliveryStatus.CANCELLED:
        return cancel_delivery(
            db, delivery_id, actor_id=partner.user_id, actor_role=CancelledBy.PARTNER,
            reason=reason, location=location
        )

    current = delivery.status
    if not can_transition(current, requested):
        logger.warning(f"Rejected transition {current.value} -> {requested.value} on delivery {delivery_id}")
        raise _conflict(delivery, current, requested)

    now = datetime.utcnow()
    rows = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.partner_id == partner_id,
        Delivery.status == current
    ).update({Delivery.status: requested, Delivery.updated_at: now})

    if rows != 1:
        db.rollback()
        logger.warning(f"Delivery {delivery_id} changed while moving {current.value} -> {requested.value}")
        raise _conflict(delivery, current, requested, "Delivery status changed concurrently, reload and retry")

    try:
        delivery.add_timeline_entry(
            requested, STATUS_DESCRIPTIONS[requested],
            location=_best_location(partner, location), at=now
        )

        if requested == DeliveryStatus.DELIVERED:
            _complete_delivery(db, delivery, partner_id, now)

        record_event(
            db, EventType.DELIVERY_STATUS_CHANGED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            previous_status=current,
            status=requested,
            location=_best_location(partner, location),
            timestamp=now,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Delivery {delivery_id} was settled concurrently: {str(e)}")
        raise _conflict(delivery, current, requested, "Delivery was settled concurrently, reload and retry")
    except Exception as e:
        db.rollback()
        logger.error(f"Error applying {requested.value} to delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Delivery {delivery_id}: {current.value} -> {requested.value}")
    return delivery


def _complete_delivery(db: Session, delivery: Delivery, partner_id: str, now: datetime):
    """Side effects of entering ``delivered``; staged, not committed."""
    payout = settlement.compute_partner_payout(delivery.total_price)

    db.query(Partner).filter(Partner.id == partner_id).update({
        Partner.total_deliveries: Partner.total_deliveries + 1,
        Partner.total_earnings: Partner.total_earnings + payout,
        Partner.availability_status: AvailabilityStatus.ONLINE,
        Partner.updated_at: now,
    }, synchronize_session=False)

    settlement.settle_delivery_completion(db, delivery, now)


def _authorize_cancel(db: Session, delivery: Delivery, actor_id: Optional[str], cancelled_by: CancelledBy):
    if cancelled_by in (CancelledBy.ADMIN, CancelledBy.SYSTEM):
        return
    if cancelled_by == CancelledBy.USER and delivery.customer_id == actor_id:
        return
    if cancelled_by == CancelledBy.PARTNER and delivery.partner_id is not None:
        partner = db.query(Partner).filter(Partner.id == delivery.partner_id).first()
        if partner is not None and partner.user_id == actor_id:
            return
    logger.warning(f"Actor {actor_id} ({cancelled_by.value}) not allowed to cancel delivery {delivery.id}")
    raise AuthorizationError(
        "Not authorized to cancel this delivery",
        details={"delivery_id": delivery.id, "actor_id": actor_id}
    )


def cancel_delivery(
    db: Session,
    delivery_id: str,
    actor_id: Optional[str],
    actor_role: Union[CancelledBy, UserRole, str],
    reason: Optional[str] = None,
    location: Optional[Dict[str, Any]] = None
) -> Delivery:
    """Cancel a delivery that has not finished yet.

    Frees the assigned partner, closes an open bid window, and opens a pending
    refund when the customer had already paid.
    """
    cancelled_by = _coerce_cancelled_by(actor_role)
    delivery = get_delivery(db, delivery_id)
    _authorize_cancel(db, delivery, actor_id, cancelled_by)

    current = delivery.status
    if current in TERMINAL_STATUSES:
        raise _conflict(
            delivery, current, DeliveryStatus.CANCELLED,
            f"Delivery cannot be cancelled as it is already {current.value}"
        )

    now = datetime.utcnow()
    rows = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.status == current
    ).update({Delivery.status: DeliveryStatus.CANCELLED, Delivery.updated_at: now})

    if rows != 1:
        db.rollback()
        raise _conflict(
            delivery, current, DeliveryStatus.CANCELLED,
            "Delivery status changed concurrently, reload and retry"
        )

    try:
        delivery.cancellation_reason = reason or DEFAULT_CANCEL_REASONS[cancelled_by]
        delivery.cancelled_by = cancelled_by
        delivery.cancelled_by_id = actor_id
        delivery.cancelled_at = now
        delivery.refund_status = RefundStatus.NOT_APPLICABLE

        if delivery.bid_status == BidStatus.OPEN:
            delivery.bid_status = BidStatus.CANCELLED

        partner = None
        if delivery.partner_id is not None and current in ACTIVE_STATUSES:
            partner = db.query(Partner).filter(Partner.id == delivery.partner_id).first()
            db.query(Partner).filter(
                Partner.id == delivery.partner_id,
                Partner.availability_status == AvailabilityStatus.BUSY
            ).update({
                Partner.availability_status: AvailabilityStatus.ONLINE,
                Partner.updated_at: now,
            }, synchronize_session=False)

        if delivery.payment_status == PaymentStatus.COMPLETED:
            settlement.request_refund(db, delivery, delivery.cancellation_reason, now)

        delivery.add_timeline_entry(
            DeliveryStatus.CANCELLED,
            f"{STATUS_DESCRIPTIONS[DeliveryStatus.CANCELLED]}: {delivery.cancellation_reason}"[:255],
            location=_best_location(partner, location),
            at=now
        )
        record_event(
            db, EventType.DELIVERY_CANCELLED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            previous_status=current,
            cancelled_by=cancelled_by,
            reason=delivery.cancellation_reason,
            partner_id=delivery.partner_id,
            refund_status=delivery.refund_status,
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Error cancelling delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Delivery {delivery_id} cancelled by {cancelled_by.value} from {current.value}")
    return delivery
