import uuid
import secrets
import string
from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, Enum, Float, ForeignKey, Integer, Text,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from database.base import Base
from core.constants import TRACKING_PREFIX, TRACKING_CODE_LENGTH
from models.partner import VehicleType
import enum

class DeliveryType(str, enum.Enum):
    INSTANT = "instant"
    SCHEDULED = "scheduled"
    CUSTOM_BID = "custom-bid"
    INTERCITY = "intercity"

class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    PICKED_UP = "picked-up"
    IN_TRANSIT = "in-transit"
    ARRIVING = "arriving"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

ACTIVE_STATUSES = (
    DeliveryStatus.ACCEPTED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.ARRIVING,
)
TERMINAL_STATUSES = (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)

# Timeline-only marker, never held in Delivery.status
TIMELINE_CREATED = "created"

class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

class CancelledBy(str, enum.Enum):
    USER = "user"
    PARTNER = "partner"
    ADMIN = "admin"
    SYSTEM = "system"

class RefundStatus(str, enum.Enum):
    NOT_APPLICABLE = "not-applicable"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

class BidStatus(str, enum.Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class PackageCategory(str, enum.Enum):
    DOCUMENTS = "documents"
    FOOD = "food"
    GROCERIES = "groceries"
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    FURNITURE = "furniture"
    OTHER = "other"


def generate_tracking_id() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return TRACKING_PREFIX + "".join(secrets.choice(alphabet) for _ in range(TRACKING_CODE_LENGTH))


def _location_dict(address, longitude, latitude, contact_name=None, contact_phone=None, instructions=None):
    return {
        "address": address,
        "coordinates": [longitude, latitude],
        "contact_name": contact_name,
        "contact_phone": contact_phone,
        "instructions": instructions,
    }


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    # Filled by the column default on first INSERT and never rewritten
    tracking_id = Column(String(16), unique=True, index=True, nullable=False, default=generate_tracking_id)

    customer_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    partner_id = Column(String, ForeignKey("partners.id"), nullable=True, index=True)
    vehicle_id = Column(String, ForeignKey("vehicles.id"), nullable=True)

    type = Column(Enum(DeliveryType), nullable=False, default=DeliveryType.INSTANT, index=True)
    status = Column(Enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING, index=True)
    vehicle_type = Column(Enum(VehicleType), nullable=False, index=True)

    # Locations
    pickup_address = Column(String(500), nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    pickup_latitude = Column(Float, nullable=False)
    pickup_contact_name = Column(String(100), nullable=True)
    pickup_contact_phone = Column(String(32), nullable=True)
    pickup_instructions = Column(Text, nullable=True)
    drop_address = Column(String(500), nullable=False)
    drop_longitude = Column(Float, nullable=False)
    drop_latitude = Column(Float, nullable=False)
    drop_contact_name = Column(String(100), nullable=True)
    drop_contact_phone = Column(String(32), nullable=True)
    drop_instructions = Column(Text, nullable=True)

    # Package
    package_description = Column(Text, nullable=True)
    package_weight_kg = Column(Float, nullable=True)
    package_length_cm = Column(Float, nullable=True)
    package_width_cm = Column(Float, nullable=True)
    package_height_cm = Column(Float, nullable=True)
    package_quantity = Column(Integer, default=1, nullable=False)
    package_is_fragile = Column(Boolean, default=False, nullable=False)
    package_category = Column(Enum(PackageCategory), default=PackageCategory.OTHER, nullable=False)

    # Schedule
    scheduled_pickup_at = Column(DateTime, nullable=True)
    schedule_is_flexible = Column(Boolean, default=False, nullable=False)

    # Pricing snapshot; total_price is authoritative for every money operation
    base_price = Column(Float, nullable=False, default=0.0)
    distance_price = Column(Float, nullable=False, default=0.0)
    time_price = Column(Float, nullable=False, default=0.0)
    surge_price = Column(Float, nullable=False, default=0.0)
    waiting_charges = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False, default="INR")

    # Payment
    payment_method = Column(Enum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_transaction_id = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Distance / duration snapshot
    distance_km = Column(Float, nullable=True)
    duration_min = Column(Float, nullable=True)

    route_polyline = Column(Text, nullable=True)

    # Rating, set once
    rating_value = Column(Integer, nullable=True)
    rating_comment = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)

    # Cancellation, set once
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by = Column(Enum(CancelledBy), nullable=True)
    cancelled_by_id = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refund_status = Column(Enum(RefundStatus), nullable=True)

    # Custom bid sub-state
    proposed_price = Column(Float, nullable=True)
    bid_expires_at = Column(DateTime, nullable=True)
    bid_status = Column(Enum(BidStatus), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer = relationship("User", back_populates="deliveries", foreign_keys=[customer_id])
    partner = relationship("Partner")
    vehicle = relationship("Vehicle")
    timeline = relationship(
        "TimelineEntry", order_by="TimelineEntry.sequence",
        cascade="all, delete-orphan", back_populates="delivery"
    )
    waypoints = relationship(
        "RouteWaypoint", order_by="RouteWaypoint.sequence",
        cascade="all, delete-orphan", back_populates="delivery"
    )
    bids = relationship(
        "DeliveryBid", order_by="DeliveryBid.submitted_at",
        cascade="all, delete-orphan", back_populates="delivery"
    )
    payments = relationship("Payment", back_populates="delivery")

    def __repr__(self):
        return f"<Delivery(id={self.id}, tracking_id={self.tracking_id}, status={self.status})>"

    # Aggregate operations

    def add_timeline_entry(self, status, description: str, location=None, at: datetime = None):
        """Append a timeline entry, never earlier than the previous one."""
        at = at or datetime.utcnow()
        if self.timeline and self.timeline[-1].timestamp > at:
            at = self.timeline[-1].timestamp

        coordinates = (location or {}).get("coordinates") or [None, None]
        entry = TimelineEntry(
            sequence=len(self.timeline),
            status=status.value if isinstance(status, enum.Enum) else status,
            timestamp=at,
            description=description,
            longitude=coordinates[0],
            latitude=coordinates[1],
            address=(location or {}).get("address"),
        )
        self.timeline.append(entry)
        return entry

    def add_waypoint(self, longitude: float, latitude: float, at: datetime = None):
        waypoint = RouteWaypoint(
            sequence=len(self.waypoints),
            longitude=longitude,
            latitude=latitude,
            recorded_at=at or datetime.utcnow(),
        )
        self.waypoints.append(waypoint)
        return waypoint

    def has_bid_from(self, partner_id: str) -> bool:
        return any(bid.partner_id == partner_id for bid in self.bids)

    def effective_bid_status(self, now: datetime = None):
        """Stored bid status with expiry applied; expiry is never written back."""
        if self.bid_status is None:
            return None
        now = now or datetime.utcnow()
        if self.bid_status == BidStatus.OPEN and self.bid_expires_at is not None and now > self.bid_expires_at:
            return BidStatus.EXPIRED
        return self.bid_status

    def bid_window_open(self, now: datetime = None) -> bool:
        return self.type == DeliveryType.CUSTOM_BID and self.effective_bid_status(now) == BidStatus.OPEN

    # Nested views used by the response schemas

    @property
    def pickup_location(self):
        return _location_dict(
            self.pickup_address, self.pickup_longitude, self.pickup_latitude,
            self.pickup_contact_name, self.pickup_contact_phone, self.pickup_instructions
        )

    @property
    def drop_location(self):
        return _location_dict(
            self.drop_address, self.drop_longitude, self.drop_latitude,
            self.drop_contact_name, self.drop_contact_phone, self.drop_instructions
        )

    @property
    def package(self):
        return {
            "description": self.package_description,
            "weight_kg": self.package_weight_kg,
            "dimensions": {
                "length_cm": self.package_length_cm,
                "width_cm": self.package_width_cm,
                "height_cm": self.package_height_cm,
            },
            "quantity": self.package_quantity,
            "is_fragile": self.package_is_fragile,
            "category": self.package_category,
        }

    @property
    def pricing(self):
        return {
            "base_price": self.base_price,
            "distance_price": self.distance_price,
            "time_price": self.time_price,
            "surge_price": self.surge_price,
            "waiting_charges": self.waiting_charges,
            "tax": self.tax,
            "discount": self.discount,
            "total_price": self.total_price,
            "currency": self.currency,
        }

    @property
    def payment(self):
        return {
            "method": self.payment_method,
            "status": self.payment_status,
            "transaction_id": self.payment_transaction_id,
            "paid_at": self.paid_at,
        }

    @property
    def rating(self):
        if self.rating_value is None:
            return None
        return {"value": self.rating_value, "comment": self.rating_comment, "created_at": self.rated_at}

    @property
    def cancellation(self):
        if self.cancelled_at is None:
            return None
        return {
            "reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "timestamp": self.cancelled_at,
            "refund_status": self.refund_status,
        }

    @property
    def custom_bid(self):
        if self.type != DeliveryType.CUSTOM_BID:
            return None
        return {
            "proposed_price": self.proposed_price,
            "expires_at": self.bid_expires_at,
            "status": self.effective_bid_status(),
            "bids": list(self.bids),
        }


# At most one active delivery per partner, enforced by the database
Index(
    "uq_deliveries_one_active_per_partner",
    Delivery.partner_id,
    unique=True,
    sqlite_where=Delivery.status.in_(ACTIVE_STATUSES),
    postgresql_where=Delivery.status.in_(ACTIVE_STATUSES),
)


class TimelineEntry(Base):
    __tablename__ = "delivery_timeline"
    __table_args__ = (
        UniqueConstraint("delivery_id", "sequence", name="uq_timeline_delivery_sequence"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    delivery_id = Column(String, ForeignKey("deliveries.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    description = Column(String(255), nullable=True)
    longitude = Column(Float, nullable=True)
    latitude = Column(Float, nullable=True)
    address = Column(String(500), nullable=True)

    delivery = relationship("Delivery", back_populates="timeline")

    @property
    def location(self):
        if self.longitude is None or self.latitude is None:
            return None
        return {"coordinates": [self.longitude, self.latitude], "address": self.address}


class RouteWaypoint(Base):
    __tablename__ = "delivery_waypoints"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    delivery_id = Column(String, ForeignKey("deliveries.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    delivery = relationship("Delivery", back_populates="waypoints")


class DeliveryBid(Base):
    __tablename__ = "delivery_bids"
    __table_args__ = (
        UniqueConstraint("delivery_id", "partner_id", name="uq_bid_delivery_partner"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    delivery_id = Column(String, ForeignKey("deliveries.id"), nullable=False, index=True)
    partner_id = Column(String, ForeignKey("partners.id"), nullable=False, index=True)
    price = Column(Float, nullable=False)
    estimated_pickup_time = Column(DateTime, nullable=True)
    message = Column(String(500), nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    delivery = relationship("Delivery", back_populates="bids")
    partner = relationship("Partner")
