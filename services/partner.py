from sqlalchemy import desc, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import logging

from core.exceptions import (
    ResourceNotFoundError, StateConflictError, ValidationError, InvariantViolationError
)
from models.user import User, UserRole
from models.partner import Partner, Vehicle, AvailabilityStatus, VerificationStatus, VehicleType
from models.delivery import Delivery, DeliveryStatus, ACTIVE_STATUSES
from models.event import EventType
from schemas.partner import VehicleCreate, VehicleUpdate
from services import settlement
from services.events import record_event

logger = logging.getLogger(__name__)


def get_partner(db: Session, partner_id: str) -> Partner:
    partner = db.query(Partner).filter(Partner.id == partner_id).first()
    if not partner:
        raise ResourceNotFoundError("Partner", partner_id)
    return partner


def get_partner_for_user(db: Session, user_id: str) -> Partner:
    partner = db.query(Partner).filter(Partner.user_id == user_id).first()
    if not partner:
        raise ResourceNotFoundError("Partner", user_id, details={"reason": "You are not registered as a partner"})
    return partner


def active_deliveries_query(db: Session, partner_id: str):
    return db.query(Delivery).filter(
        Delivery.partner_id == partner_id,
        Delivery.status.in_(ACTIVE_STATUSES)
    )


def active_delivery_for(db: Session, partner_id: str) -> Optional[Delivery]:
    """Return the partner's active delivery, refusing to guess if there is more than one."""
    deliveries = active_deliveries_query(db, partner_id).all()
    if len(deliveries) > 1:
        logger.error(
            f"INVARIANT VIOLATION: partner {partner_id} holds {len(deliveries)} active deliveries: "
            f"{[d.id for d in deliveries]}"
        )
        raise InvariantViolationError(
            "Partner has more than one active delivery",
            details={"partner_id": partner_id, "delivery_ids": [d.id for d in deliveries]}
        )
    return deliveries[0] if deliveries else None


def register_partner(db: Session, user_id: str) -> Partner:
    """Create a partner profile for a user, pending verification."""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise ResourceNotFoundError("User", user_id)

    if db.query(Partner).filter(Partner.user_id == user_id).first():
        raise StateConflictError("You are already registered as a partner", details={"user_id": user_id})

    partner = Partner(
        user_id=user_id,
        verification_status=VerificationStatus.PENDING,
        availability_status=AvailabilityStatus.OFFLINE,
    )
    if user.role == UserRole.CUSTOMER:
        user.role = UserRole.PARTNER

    try:
        db.add(partner)
        db.commit()
        db.refresh(partner)
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Duplicate partner registration for user {user_id}: {str(e)}")
        raise StateConflictError("You are already registered as a partner", details={"user_id": user_id})

    logger.info(f"Partner {partner.id} registered for user {user_id}")
    return partner


def set_verification_status(
    db: Session,
    partner_id: str,
    status: VerificationStatus,
    notes: Optional[str] = None
) -> Partner:
    partner = get_partner(db, partner_id)
    partner.verification_status = status
    partner.verification_notes = notes

    # A partner losing approval cannot stay visible to the marketplace
    if status != VerificationStatus.APPROVED and partner.availability_status == AvailabilityStatus.ONLINE:
        partner.availability_status = AvailabilityStatus.OFFLINE

    db.commit()
    db.refresh(partner)
    logger.info(f"Partner {partner_id} verification set to {status.value}")
    return partner


def add_vehicle(db: Session, partner_id: str, vehicle_data: VehicleCreate) -> Vehicle:
    partner = get_partner(db, partner_id)
    registration = vehicle_data.registration_number.strip().upper()

    existing = db.query(Vehicle).filter(Vehicle.registration_number == registration).first()
    if existing:
        raise StateConflictError(
            "Vehicle with this registration number already exists",
            details={"registration_number": registration}
        )

    vehicle = Vehicle(
        partner_id=partner.id,
        type=vehicle_data.type,
        model=vehicle_data.model,
        registration_number=registration,
        capacity_kg=vehicle_data.capacity_kg,
        is_verified=False,
        is_active=True,
    )

    try:
        db.add(vehicle)
        db.commit()
        db.refresh(vehicle)
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Registration number collision for {registration}: {str(e)}")
        raise StateConflictError(
            "Vehicle with this registration number already exists",
            details={"registration_number": registration}
        )

    logger.info(f"Vehicle {vehicle.id} ({vehicle.type.value}) added for partner {partner_id}")
    return vehicle


def set_vehicle_verification(db: Session, vehicle_id: str, is_verified: bool, notes: Optional[str] = None) -> Vehicle:
    vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
    if not vehicle:
        raise ResourceNotFoundError("Vehicle", vehicle_id)
    vehicle.is_verified = is_verified
    vehicle.verification_notes = notes
    db.commit()
    db.refresh(vehicle)
    return vehicle


def usable_vehicles(db: Session, partner_id: str, vehicle_type: Optional[VehicleType] = None) -> List[Vehicle]:
    query = db.query(Vehicle).filter(
        Vehicle.partner_id == partner_id,
        Vehicle.is_verified == True,
        Vehicle.is_active == True
    )
    if vehicle_type is not None:
        query = query.filter(Vehicle.type == vehicle_type)
    return query.order_by(Vehicle.created_at).all()


def set_availability(db: Session, partner_id: str, status: AvailabilityStatus) -> Partner:
    """Partner-initiated online/offline switch; busy is only ever set by assignment."""
    partner = get_partner(db, partner_id)

    if status == AvailabilityStatus.BUSY:
        raise ValidationError("Busy is set by the system when a delivery is assigned", field="status")

    if not partner.is_approved:
        raise StateConflictError(
            "Your partner account is not approved yet",
            current=partner.verification_status.value,
            details={"partner_id": partner_id}
        )

    if active_delivery_for(db, partner_id) is not None:
        raise StateConflictError(
            f"Cannot go {status.value} with an active delivery",
            current=partner.availability_status.value,
            requested=status.value,
            details={"partner_id": partner_id}
        )

    # Only flip from a non-busy state so a concurrent assignment is not overwritten
    rows = db.query(Partner).filter(
        Partner.id == partner_id,
        Partner.availability_status != AvailabilityStatus.BUSY
    ).update({Partner.availability_status: status, Partner.updated_at: datetime.utcnow()})

    if rows != 1:
        db.rollback()
        raise StateConflictError(
            "Partner was assigned a delivery in the meantime",
            current=AvailabilityStatus.BUSY.value,
            requested=status.value,
        )

    db.commit()
    db.refresh(partner)
    logger.info(f"Partner {partner_id} is now {status.value}")
    return partner


def update_location(
    db: Session,
    partner_id: str,
    longitude: float,
    latitude: float,
    address: Optional[str] = None
) -> Partner:
    """Store the partner's position and extend the route of their active delivery."""
    partner = get_partner(db, partner_id)
    now = datetime.utcnow()

    partner.current_longitude = longitude
    partner.current_latitude = latitude
    if address:
        partner.current_address = address
    partner.location_updated_at = now

    delivery = active_delivery_for(db, partner_id)
    if delivery is not None:
        delivery.add_waypoint(longitude, latitude, at=now)
        record_event(
            db, EventType.PARTNER_LOCATION_UPDATED,
            delivery_id=delivery.id,
            recipient_id=delivery.customer_id,
            coordinates=[longitude, latitude],
            address=address or partner.current_address,
            timestamp=now,
        )

    db.commit()
    db.refresh(partner)
    return partner


def list_vehicles(db: Session, partner_id: str) -> List[Vehicle]:
    return db.query(Vehicle).filter(Vehicle.partner_id == partner_id).order_by(Vehicle.created_at).all()


def update_vehicle(db: Session, partner_id: str, vehicle_id: str, vehicle_data: VehicleUpdate) -> Vehicle:
    """Edit one of the partner's vehicles or take it in and out of service."""
    vehicle = db.query(Vehicle).filter(
        Vehicle.id == vehicle_id,
        Vehicle.partner_id == partner_id
    ).first()
    if not vehicle:
        raise ResourceNotFoundError("Vehicle", vehicle_id)

    changes = vehicle_data.dict(exclude_unset=True)

    if changes.get("is_active") is False and vehicle.is_active:
        in_use = active_deliveries_query(db, partner_id).filter(Delivery.vehicle_id == vehicle_id).first()
        if in_use is not None:
            raise StateConflictError(
                "Cannot deactivate a vehicle used by an active delivery",
                current=in_use.status.value,
                details={"vehicle_id": vehicle_id, "delivery_id": in_use.id}
            )

    for field, value in changes.items():
        if value is not None:
            setattr(vehicle, field, value)

    db.commit()
    db.refresh(vehicle)
    logger.info(f"Vehicle {vehicle_id} of partner {partner_id} updated: {sorted(changes)}")
    return vehicle


def list_partner_deliveries(
    db: Session,
    partner_id: str,
    status: Optional[DeliveryStatus] = None,
    page: int = 1,
    per_page: int = 10
) -> Tuple[List[Delivery], int]:
    """Deliveries assigned to the partner, newest first."""
    query = db.query(Delivery).filter(Delivery.partner_id == partner_id)
    if status is not None:
        query = query.filter(Delivery.status == status)

    total = query.count()
    deliveries = query.order_by(desc(Delivery.created_at)).offset((page - 1) * per_page).limit(per_page).all()
    return deliveries, total


def dashboard_stats(db: Session, partner_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    partner = get_partner(db, partner_id)
    now = now or datetime.utcnow()

    counts = dict(
        db.query(Delivery.status, func.count(Delivery.id))
        .filter(Delivery.partner_id == partner_id)
        .group_by(Delivery.status)
        .all()
    )
    # Day boundaries are UTC
    today = settlement.partner_earnings(db, partner_id, since=now.replace(hour=0, minute=0, second=0, microsecond=0))
    recent, _ = list_partner_deliveries(db, partner_id, per_page=5)

    return {
        "partner_id": partner.id,
        "rating": partner.rating,
        "total_ratings": partner.total_ratings,
        "availability_status": partner.availability_status,
        "total_deliveries": sum(counts.values()),
        "active_deliveries": sum(counts.get(s, 0) for s in ACTIVE_STATUSES),
        "completed_deliveries": counts.get(DeliveryStatus.DELIVERED, 0),
        "cancelled_deliveries": counts.get(DeliveryStatus.CANCELLED, 0),
        "today_deliveries": today["total_deliveries"],
        "today_earnings": today["total_earnings"],
        "total_earnings": partner.total_earnings,
        "recent_deliveries": recent,
    }
