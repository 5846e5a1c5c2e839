import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Enum, Float, ForeignKey, Integer
from sqlalchemy.orm import relationship, validates
from database.base import Base
import enum

class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_REVIEW = "in-review"
    APPROVED = "approved"
    REJECTED = "rejected"

class AvailabilityStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"

class VehicleType(str, enum.Enum):
    BIKE = "bike"
    AUTO = "auto"
    CAR = "car"
    VAN = "van"
    TRUCK = "truck"

class Partner(Base):
    __tablename__ = "partners"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)

    verification_status = Column(Enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False, index=True)
    verification_notes = Column(String(500), nullable=True)
    availability_status = Column(Enum(AvailabilityStatus), default=AvailabilityStatus.OFFLINE, nullable=False, index=True)

    # Last known position, [longitude, latitude] like the delivery locations
    current_longitude = Column(Float, nullable=True)
    current_latitude = Column(Float, nullable=True)
    current_address = Column(String(500), nullable=True)
    location_updated_at = Column(DateTime, nullable=True)

    # Aggregates, only ever changed with in-place SQL arithmetic
    rating = Column(Float, default=0.0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)
    total_deliveries = Column(Integer, default=0, nullable=False)
    total_earnings = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="partner_profile")
    vehicles = relationship("Vehicle", back_populates="partner", cascade="all, delete-orphan")

    @property
    def is_approved(self) -> bool:
        return self.verification_status == VerificationStatus.APPROVED

    @property
    def current_location(self):
        if self.current_longitude is None or self.current_latitude is None:
            return None
        return {
            "coordinates": [self.current_longitude, self.current_latitude],
            "address": self.current_address,
        }

    def __repr__(self):
        return f"<Partner(id={self.id}, availability={self.availability_status})>"

class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    partner_id = Column(String, ForeignKey("partners.id"), nullable=False, index=True)
    type = Column(Enum(VehicleType), nullable=False, index=True)
    model = Column(String(100), nullable=False)
    registration_number = Column(String(32), nullable=False, unique=True, index=True)
    capacity_kg = Column(Float, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    verification_notes = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    partner = relationship("Partner", back_populates="vehicles")

    @validates("registration_number")
    def _normalize_registration(self, key, value):
        return value.strip().upper() if value else value

    @property
    def is_usable(self) -> bool:
        return bool(self.is_verified and self.is_active)
