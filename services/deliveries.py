from sqlalchemy.orm import Session
from sqlalchemy import desc
from typing import List, Optional, Union
from datetime import datetime
import logging

from core.config import settings
from core.constants import BID_WINDOW
from core.exceptions import (
    ResourceNotFoundError, AuthorizationError, StateConflictError, ValidationError
)
from models.user import UserRole
from models.delivery import (
    Delivery, DeliveryType, DeliveryStatus, PaymentMethod, PaymentStatus,
    BidStatus, TIMELINE_CREATED, ACTIVE_STATUSES
)
from models.event import EventType
from schemas.delivery import DeliveryCreate, CustomBidDeliveryCreate, LocationIn, PackageIn, ScheduleIn
from services import pricing
from services.geo import DistanceProvider, default_distance_provider, estimate_route
from services.events import record_event

logger = logging.getLogger(__name__)


def get_delivery(db: Session, delivery_id: str) -> Delivery:
    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).first()
    if not delivery:
        raise ResourceNotFoundError("Delivery", delivery_id)
    return delivery


def get_delivery_by_tracking_id(db: Session, tracking_id: str) -> Delivery:
    delivery = db.query(Delivery).filter(Delivery.tracking_id == tracking_id.strip().upper()).first()
    if not delivery:
        raise ResourceNotFoundError("Delivery", tracking_id)
    return delivery


def get_delivery_for_actor(db: Session, delivery_id: str, actor_id: str, role: UserRole) -> Delivery:
    """Load a delivery visible to the actor: its customer, its partner, or an admin."""
    delivery = get_delivery(db, delivery_id)
    if role == UserRole.ADMIN or delivery.customer_id == actor_id:
        return delivery
    if delivery.partner is not None and delivery.partner.user_id == actor_id:
        return delivery
    raise AuthorizationError("Not authorized to view this delivery", details={"delivery_id": delivery_id})


def list_customer_deliveries(
    db: Session,
    customer_id: str,
    status: Optional[DeliveryStatus] = None,
    active_only: bool = False,
    page: int = 1,
    per_page: int = 10
):
    query = db.query(Delivery).filter(Delivery.customer_id == customer_id)
    if status is not None:
        query = query.filter(Delivery.status == status)
    if active_only:
        query = query.filter(Delivery.status.in_((DeliveryStatus.SEARCHING,) + ACTIVE_STATUSES))

    total = query.count()
    deliveries = query.order_by(desc(Delivery.created_at)).offset((page - 1) * per_page).limit(per_page).all()
    return deliveries, total


def _apply_locations(delivery: Delivery, pickup: LocationIn, drop: LocationIn):
    delivery.pickup_address = pickup.address
    delivery.pickup_longitude, delivery.pickup_latitude = pickup.coordinates
    delivery.pickup_contact_name = pickup.contact_name
    delivery.pickup_contact_phone = pickup.contact_phone
    delivery.pickup_instructions = pickup.instructions
    delivery.drop_address = drop.address
    delivery.drop_longitude, delivery.drop_latitude = drop.coordinates
    delivery.drop_contact_name = drop.contact_name
    delivery.drop_contact_phone = drop.contact_phone
    delivery.drop_instructions = drop.instructions


def _apply_package(delivery: Delivery, package: PackageIn):
    delivery.package_description = package.description
    delivery.package_weight_kg = package.weight_kg
    if package.dimensions is not None:
        delivery.package_length_cm = package.dimensions.length_cm
        delivery.package_width_cm = package.dimensions.width_cm
        delivery.package_height_cm = package.dimensions.height_cm
    delivery.package_quantity = package.quantity
    delivery.package_is_fragile = package.is_fragile
    delivery.package_category = package.category


def _apply_schedule(delivery: Delivery, schedule: Optional[ScheduleIn]):
    if schedule is None:
        return
    delivery.scheduled_pickup_at = schedule.pickup_at
    delivery.schedule_is_flexible = schedule.is_flexible


def _apply_fare(delivery: Delivery, fare: pricing.FareBreakdown):
    delivery.base_price = fare.base_fare
    delivery.distance_price = fare.distance_fare
    delivery.time_price = fare.time_fare
    delivery.surge_price = fare.surge_fare
    delivery.tax = fare.tax
    delivery.total_price = float(fare.total)
    delivery.currency = settings.CURRENCY


def quote(
    pickup: LocationIn,
    drop: LocationIn,
    vehicle_type,
    distance_provider: DistanceProvider = None,
    is_peak_hour: Optional[bool] = None
):
    """Standard fare for a route, before any delivery is stored."""
    estimate = estimate_route(distance_provider or default_distance_provider, pickup.coordinates, drop.coordinates)
    peak = pricing.is_peak_hour() if is_peak_hour is None else is_peak_hour
    fare = pricing.calculate_price(estimate.distance_km, estimate.duration_min, vehicle_type, peak)
    return estimate, fare


def create_delivery(
    db: Session,
    customer_id: str,
    delivery_data: DeliveryCreate,
    distance_provider: DistanceProvider = None,
    is_peak_hour: Optional[bool] = None
) -> Delivery:
    """Create an instant, scheduled or intercity delivery.

    Instant and intercity requests go straight to ``searching`` so partners can
    see them; scheduled ones stay ``pending`` until published.
    """
    if delivery_data.type == DeliveryType.CUSTOM_BID:
        raise ValidationError("Use the custom bid flow for custom bid deliveries", field="type")
    if delivery_data.type == DeliveryType.SCHEDULED and delivery_data.schedule is None:
        raise ValidationError("Scheduled deliveries need a pickup time", field="schedule")

    estimate, fare = quote(
        delivery_data.pickup_location, delivery_data.drop_location,
        delivery_data.vehicle_type, distance_provider, is_peak_hour
    )

    delivery = Delivery(
        customer_id=customer_id,
        type=delivery_data.type,
        status=DeliveryStatus.PENDING,
        vehicle_type=delivery_data.vehicle_type,
        payment_method=delivery_data.payment_method,
        payment_status=PaymentStatus.PENDING,
        distance_km=estimate.distance_km,
        duration_min=estimate.duration_min,
    )
    _apply_locations(delivery, delivery_data.pickup_location, delivery_data.drop_location)
    _apply_package(delivery, delivery_data.package)
    _apply_schedule(delivery, delivery_data.schedule)
    _apply_fare(delivery, fare)

    now = datetime.utcnow()
    delivery.add_timeline_entry(TIMELINE_CREATED, "Delivery request created", at=now)
    if delivery_data.type != DeliveryType.SCHEDULED:
        delivery.status = DeliveryStatus.SEARCHING
        delivery.add_timeline_entry(DeliveryStatus.SEARCHING, "Searching for a delivery partner", at=now)

    try:
        db.add(delivery)
        db.flush()
        record_event(
            db, EventType.DELIVERY_CREATED,
            delivery_id=delivery.id,
            recipient_id=customer_id,
            status=delivery.status,
            vehicle_type=delivery.vehicle_type,
            total_price=delivery.total_price,
        )
        db.commit()
        db.refresh(delivery)
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating delivery for customer {customer_id}: {str(e)}")
        raise

    logger.info(
        f"Delivery {delivery.id} ({delivery.tracking_id}) created: {delivery.type.value}, "
        f"{delivery.vehicle_type.value}, total {delivery.total_price}"
    )
    return delivery


def create_custom_bid_delivery(
    db: Session,
    customer_id: str,
    delivery_data: CustomBidDeliveryCreate,
    distance_provider: DistanceProvider = None,
    is_peak_hour: Optional[bool] = None
) -> Delivery:
    """Create a delivery whose price is set by partner bids.

    The proposed price must be at least the bid floor of the standard fare; the
    floor is echoed back in the error when it is not.
    """
    estimate, fare = quote(
        delivery_data.pickup_location, delivery_data.drop_location,
        delivery_data.vehicle_type, distance_provider, is_peak_hour
    )
    floor = pricing.minimum_bid_price(fare.total)

    if delivery_data.proposed_price < floor:
        logger.warning(
            f"Custom bid rejected for customer {customer_id}: proposed {delivery_data.proposed_price} < floor {floor}"
        )
        raise ValidationError(
            f"Proposed price is too low. Minimum acceptable price is {floor:.2f}",
            field="proposed_price",
            details={"minimum_price": floor, "standard_price": fare.total}
        )

    now = datetime.utcnow()
    delivery = Delivery(
        customer_id=customer_id,
        type=DeliveryType.CUSTOM_BID,
        status=DeliveryStatus.PENDING,
        vehicle_type=delivery_data.vehicle_type,
        payment_method=PaymentMethod.CASH,
        payment_status=PaymentStatus.PENDING,
        distance_km=estimate.distance_km,
        duration_min=estimate.duration_min,
        proposed_price=delivery_data.proposed_price,
        bid_status=BidStatus.OPEN,
        bid_expires_at=now + BID_WINDOW,
        created_at=now,
    )
    _apply_locations(delivery, delivery_data.pickup_location, delivery_data.drop_location)
    _apply_package(delivery, delivery_data.package)
    _apply_schedule(delivery, delivery_data.schedule)
    _apply_fare(delivery, fare)
    delivery.total_price = delivery_data.proposed_price

    delivery.add_timeline_entry(TIMELINE_CREATED, "Custom bid delivery created", at=now)

    try:
        db.add(delivery)
        db.flush()
        record_event(
            db, EventType.DELIVERY_CREATED,
            delivery_id=delivery.id,
            recipient_id=customer_id,
            status=delivery.status,
            vehicle_type=delivery.vehicle_type,
            proposed_price=delivery.proposed_price,
            expires_at=delivery.bid_expires_at,
        )
        db.commit()
        db.refresh(delivery)
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating custom bid delivery for customer {customer_id}: {str(e)}")
        raise

    logger.info(
        f"Custom bid delivery {delivery.id} created: proposed {delivery.proposed_price}, floor {floor}, "
        f"expires {delivery.bid_expires_at.isoformat()}"
    )
    return delivery


def publish_delivery(db: Session, delivery_id: str, actor_id: str, role: Union[UserRole, str]) -> Delivery:
    """Move a pending delivery into ``searching`` so nearby partners can accept it."""
    delivery = get_delivery(db, delivery_id)

    if role != UserRole.ADMIN and delivery.customer_id != actor_id:
        raise AuthorizationError("Not authorized to publish this delivery", details={"delivery_id": delivery_id})
    if delivery.type == DeliveryType.CUSTOM_BID:
        raise StateConflictError(
            "Custom bid deliveries are assigned through bids",
            current=delivery.status.value,
            requested=DeliveryStatus.SEARCHING.value,
            details={"delivery_id": delivery_id}
        )

    rows = db.query(Delivery).filter(
        Delivery.id == delivery_id,
        Delivery.status == DeliveryStatus.PENDING
    ).update({Delivery.status: DeliveryStatus.SEARCHING, Delivery.updated_at: datetime.utcnow()})

    if rows != 1:
        db.rollback()
        db.refresh(delivery)
        raise StateConflictError(
            f"Invalid status transition from {delivery.status.value} to {DeliveryStatus.SEARCHING.value}",
            current=delivery.status.value,
            requested=DeliveryStatus.SEARCHING.value,
            details={"delivery_id": delivery_id}
        )

    delivery.add_timeline_entry(DeliveryStatus.SEARCHING, "Searching for a delivery partner")
    record_event(db, EventType.DELIVERY_PUBLISHED, delivery_id=delivery.id, recipient_id=delivery.customer_id)
    db.commit()
    db.refresh(delivery)

    logger.info(f"Delivery {delivery_id} published")
    return delivery
