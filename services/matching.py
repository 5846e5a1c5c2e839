"""
Matching partners to deliveries: direct acceptance of nearby requests and the
custom bid flow.

Assignment always flips two rows, the delivery and the partner, with
conditional UPDATEs inside one transaction. Losing either race rolls the
whole assignment back and surfaces as a StateConflictError; the partial unique
index on active deliveries backs this up at the database level.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Tuple
from datetime import datetime
import logging

from core.constants import NEARBY_RADIUS_KM, NEARBY_RESULT_LIMIT
from core.exceptions import (
    ResourceNotFoundError, AuthorizationError, StateConflictError, ValidationError
)
from models.user import UserRole
from models.partner import Partner, Vehicle, AvailabilityStatus
from models.delivery import (
    Delivery, DeliveryBid, DeliveryType, DeliveryStatus, PaymentMethod, BidStatus
)
from models.event import EventType
from services.deliveries import get_delivery
from services.events import record_event
from services.geo import bounding_box, haversine_km
from services.partner import get_partner, active_delivery_for, usable_vehicles

logger = logging.getLogger(__name__)


def _require_approved(partner: Partner):
    if not partner.is_approved:
        raise AuthorizationError(
            "Your partner account is not approved yet",
            details={"partner_id": partner.id, "verification_status": partner.verification_status.value}
        )


def _require_online(partner: Partner):
    if partner.availability_status != AvailabilityStatus.ONLINE:
        raise StateConflictError(
            "You must be online to take deliveries",
            current=partner.availability_status.value,
            requested=AvailabilityStatus.BUSY.value,
            details={"partner_id": partner.id}
        )


def _require_no_active_delivery(db: Session, partner: Partner):
    active = active_delivery_for(db, partner.id)
    if active is not None:
        raise StateConflictError(
            "You already have an active delivery",
            current=active.status.value,
            details={"partner_id": partner.id, "active_delivery_id": active.id}
        )


def list_nearby_requests(db: Session, partner_id: str) -> List[Tuple[Delivery, float]]:
    """Searching deliveries the partner can serve, nearest pickup first.

    Returns (delivery, distance_km) pairs within the matching radius, capped
    at the result limit.
    """
    partner = get_partner(db, partner_id)
    _require_approved(partner)
    _require_online(partner)

    vehicle_types = {v.type for v in usable_vehicles(db, partner_id)}
    if not vehicle_types:
        raise StateConflictError(
            "You need a verified and active vehicle to see requests",
            details={"partner_id": partner_id}
        )

    if partner.current_location is None:
        raise StateConflictError(
            "Share your current location to see nearby requests",
            details={"partner_id": partner_id}
        )

    lon, lat = partner.current_longitude, partner.current_latitude
    min_lon, max_lon, min_lat, max_lat = bounding_box(lon, lat, NEARBY_RADIUS_KM)

    candidates = db.query(Delivery).filter(
        Delivery.status == DeliveryStatus.SEARCHING,
        Delivery.partner_id.is_(None),
        Delivery.vehicle_type.in_(vehicle_types),
        Delivery.pickup_longitude.between(min_lon, max_lon),
        Delivery.pickup_latitude.between(min_lat, max_lat)
    ).all()

    nearby = []
    for delivery in candidates:
        distance = haversine_km(lon, lat, delivery.pickup_longitude, delivery.pickup_latitude)
        if distance <= NEARBY_RADIUS_KM:
            nearby.append((delivery, round(distance, 2)))

    nearby.sort(key=lambda pair: (pair[1], pair[0].created_at))
    return nearby[:NEARBY_RESULT_LIMIT]


def _resolve_vehicle(db: Session, partner: Partner, delivery: Delivery, vehicle_id: Optional[str]) -> Vehicle:
    if vehicle_id is None:
        vehicles = usable_vehicles(db, partner.id, delivery.vehicle_type)
        if not vehicles:
            raise ValidationError(
                f"You have no verified {delivery.vehicle_type.value} for this delivery",
                field="vehicle_id",
                details={"required_vehicle_type": delivery.vehicle_type.value}
            )
        return vehicles[0]

    vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
    if not vehicle:
        raise ResourceNotFoundError("Vehicle", vehicle_id)
    if vehicle.partner_id != partner.id:
        raise AuthorizationError("This vehicle does not belong to you", details={"vehicle_id": vehicle_id})
    if not vehicle.is_usable:
        raise StateConflictError(
            "Vehicle must be verified and active",
            details={"vehicle_id": vehicle_id, "is_verified": vehicle.is_verified, "is_active": vehicle.is_active}
        )
    if vehicle.type != delivery.vehicle_type:
        raise ValidationError(
            f"Delivery needs a {delivery.vehicle_type.value}, vehicle is a {vehicle.type.value}",
            field="vehicle_id",
            details={"required_vehicle_type": delivery.vehicle_type.value, "vehicle_type": vehicle.type.value}
        )
    return vehicle


def _mark_partner_busy(db: Session, partner_id: str, now: datetime) -> int:
    return db.query(Partner).filter(
        Partner.id == partner_id,
        Partner.availability_status == AvailabilityStatus.ONLINE
    ).update({
        Partner.availability_status: AvailabilityStatus.BUSY,
        Partner.updated_at: now,
    }, synchronize_session=False)


def accept_delivery(db: Session, partner_id: str, delivery_id: str, vehicle_id: Optional[str] = None) -> Delivery:
    """Assign a searching delivery to the first partner who claims it."""
    partner = get_partner(db, partner_id)
    _require_approved(partner)

    delivery = get_delivery(db, delivery_id)
    if delivery.type == DeliveryType.CUSTOM_BID:
        raise StateConflictError(
            "Custom bid deliveries are assigned through bids",
            current=delivery.status.value,
            details={"delivery_id": delivery_id}
        )
    if delivery.status != DeliveryStatus.SEARCHING or delivery.partner_id is not None:
        raise StateConflictError(
            "Delivery is no longer available",
            current=delivery.status.value,
            requested=DeliveryStatus.ACCEPTED.value,
            details={"delivery_id": delivery_id}
        )

    vehicle = _resolve_vehicle(db, partner, delivery, vehicle_id)
    _require_online(partner)
    _require_no_active_delivery(db, partner)

    now = datetime.utcnow()
    try:
        if _mark_partner_busy(db, partner_id, now) != 1:
            db.rollback()
            raise StateConflictError(
                "You must be online to take deliveries",
                requested=AvailabilityStatus.BUSY.value,
                details={"partner_id": partner_id}
            )

        rows = db.query(Delivery).filter(
            Delivery.id == delivery_id,
            Delivery.status == DeliveryStatus.SEARCHING,
            Delivery.partner_id.is_(None)
        ).update({
            Delivery.status: DeliveryStatus.ACCEPTED,
            Delivery.partner_id: partner_id,
            Delivery.vehicle_id: vehicle.id,
            Delivery.updated_at: now,
        }, synchronize_session=False)

        if rows != 1:
            db.rollback()
            logger.info(f"Partner {partner_id} lost the race for delivery {delivery_id}")
            raise StateConflictError(
                "Delivery is no longer available",
                requested=DeliveryStatus.ACCEPTED.value,
                details={"delivery_id": delivery_id}
            )

        db.refresh(delivery, ["status", "partner_id", "vehicle_id"])
        delivery.add_timeline_entry(
            DeliveryStatus.ACCEPTED, "Delivery partner assigned",
            location=partner.current_location, at=now
        )
        record_event(
            db, EventType.DELIVERY_ACCEPTED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            partner_id=partner_id,
            vehicle_id=vehicle.id,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Assignment of delivery {delivery_id} to partner {partner_id} rejected by the database: {str(e)}")
        raise StateConflictError(
            "You already have an active delivery",
            details={"partner_id": partner_id, "delivery_id": delivery_id}
        )
    except StateConflictError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error accepting delivery {delivery_id} for partner {partner_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Delivery {delivery_id} accepted by partner {partner_id} with vehicle {vehicle.id}")
    return delivery


def _bid_window_closed(delivery: Delivery, now: datetime) -> StateConflictError:
    status = delivery.effective_bid_status(now)
    return StateConflictError(
        "Bidding is closed for this delivery",
        current=status.value if status else None,
        requested=BidStatus.OPEN.value,
        details={"delivery_id": delivery.id, "expires_at": delivery.bid_expires_at}
    )


def submit_bid(
    db: Session,
    partner_id: str,
    delivery_id: str,
    price: float,
    estimated_pickup_time: Optional[datetime] = None,
    message: Optional[str] = None
) -> DeliveryBid:
    """Place a partner's single bid on an open custom bid delivery."""
    if price is None or price <= 0:
        raise ValidationError("Bid price must be positive", field="price")

    partner = get_partner(db, partner_id)
    _require_approved(partner)

    delivery = get_delivery(db, delivery_id)
    if delivery.type != DeliveryType.CUSTOM_BID:
        raise StateConflictError(
            "Bids are only accepted on custom bid deliveries",
            details={"delivery_id": delivery_id, "type": delivery.type.value}
        )

    now = datetime.utcnow()
    if not delivery.bid_window_open(now):
        raise _bid_window_closed(delivery, now)

    if delivery.has_bid_from(partner_id):
        raise StateConflictError(
            "You have already placed a bid on this delivery",
            details={"delivery_id": delivery_id, "partner_id": partner_id}
        )

    try:
        # Re-check the window inside the write so a bid cannot land after acceptance
        rows = db.query(Delivery).filter(
            Delivery.id == delivery_id,
            Delivery.bid_status == BidStatus.OPEN,
            Delivery.bid_expires_at >= now
        ).update({Delivery.updated_at: now}, synchronize_session=False)

        if rows != 1:
            db.rollback()
            raise _bid_window_closed(delivery, now)

        bid = DeliveryBid(
            delivery_id=delivery_id,
            partner_id=partner_id,
            price=price,
            estimated_pickup_time=estimated_pickup_time,
            message=message,
            submitted_at=now,
        )
        db.add(bid)
        db.flush()
        record_event(
            db, EventType.BID_SUBMITTED,
            delivery_id=delivery_id,
            recipient_id=delivery.customer_id,
            bid_id=bid.id,
            partner_id=partner_id,
            price=price,
            estimated_pickup_time=estimated_pickup_time,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Duplicate bid from partner {partner_id} on delivery {delivery_id}: {str(e)}")
        raise StateConflictError(
            "You have already placed a bid on this delivery",
            details={"delivery_id": delivery_id, "partner_id": partner_id}
        )
    except StateConflictError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error submitting bid on delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(bid)
    logger.info(f"Partner {partner_id} bid {price} on delivery {delivery_id}")
    return bid


def list_bids(db: Session, delivery_id: str, actor_id: str, role: UserRole = UserRole.CUSTOMER) -> List[DeliveryBid]:
    delivery = get_delivery(db, delivery_id)
    if role != UserRole.ADMIN and delivery.customer_id != actor_id:
        raise AuthorizationError("Not authorized to view bids for this delivery", details={"delivery_id": delivery_id})
    return list(delivery.bids)


def accept_bid(
    db: Session,
    customer_id: str,
    delivery_id: str,
    bid_id: str,
    payment_method: PaymentMethod = PaymentMethod.CASH
) -> Delivery:
    """Accept one bid: the bidder is assigned and the bid price becomes the total."""
    delivery = get_delivery(db, delivery_id)
    if delivery.customer_id != customer_id:
        raise AuthorizationError("Not authorized to accept bids for this delivery", details={"delivery_id": delivery_id})

    bid = db.query(DeliveryBid).filter(
        DeliveryBid.id == bid_id,
        DeliveryBid.delivery_id == delivery_id
    ).first()
    if not bid:
        raise ResourceNotFoundError("Bid", bid_id)

    now = datetime.utcnow()
    if not delivery.bid_window_open(now):
        raise _bid_window_closed(delivery, now)

    partner = get_partner(db, bid.partner_id)
    if not partner.is_approved:
        raise StateConflictError(
            "The bidding partner can no longer take deliveries",
            current=partner.verification_status.value,
            details={"partner_id": partner.id}
        )
    _require_online(partner)
    _require_no_active_delivery(db, partner)

    vehicles = usable_vehicles(db, partner.id, delivery.vehicle_type)
    vehicle_id = vehicles[0].id if vehicles else None

    try:
        rows = db.query(Delivery).filter(
            Delivery.id == delivery_id,
            Delivery.status == DeliveryStatus.PENDING,
            Delivery.bid_status == BidStatus.OPEN,
            Delivery.bid_expires_at >= now
        ).update({
            Delivery.status: DeliveryStatus.ACCEPTED,
            Delivery.bid_status: BidStatus.ACCEPTED,
            Delivery.partner_id: partner.id,
            Delivery.vehicle_id: vehicle_id,
            Delivery.total_price: bid.price,
            Delivery.payment_method: payment_method,
            Delivery.updated_at: now,
        }, synchronize_session=False)

        if rows != 1:
            db.rollback()
            raise _bid_window_closed(delivery, now)

        if _mark_partner_busy(db, partner.id, now) != 1:
            db.rollback()
            raise StateConflictError(
                "The bidding partner is no longer online",
                requested=AvailabilityStatus.BUSY.value,
                details={"partner_id": partner.id}
            )

        db.refresh(delivery, [
            "status", "bid_status", "partner_id", "vehicle_id", "total_price", "payment_method"
        ])
        delivery.add_timeline_entry(
            DeliveryStatus.ACCEPTED, f"Bid of {bid.price:.2f} accepted",
            location=partner.current_location, at=now
        )
        record_event(
            db, EventType.BID_ACCEPTED,
            delivery_id=delivery.id,
            recipient_id=partner.user_id,
            bid_id=bid.id,
            price=bid.price,
        )
        record_event(
            db, EventType.DELIVERY_ACCEPTED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            partner_id=partner.id,
            vehicle_id=vehicle_id,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Bid acceptance on delivery {delivery_id} rejected by the database: {str(e)}")
        raise StateConflictError(
            "The bidding partner already has an active delivery",
            details={"partner_id": partner.id, "delivery_id": delivery_id}
        )
    except StateConflictError:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error accepting bid {bid_id} on delivery {delivery_id}: {str(e)}")
        raise

    db.refresh(delivery)
    logger.info(f"Bid {bid_id} accepted on delivery {delivery_id}: partner {partner.id}, total {bid.price}")
    return delivery
