from pydantic import BaseModel, Field, validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from models.delivery import (
    DeliveryType, DeliveryStatus, PaymentMethod, PackageCategory, BidStatus
)
from models.partner import VehicleType


def _check_coordinates(v):
    if v is None:
        return v
    if len(v) != 2:
        raise ValueError('Coordinates must be a [longitude, latitude] pair')
    longitude, latitude = v
    if not -180 <= longitude <= 180:
        raise ValueError('Longitude must be between -180 and 180')
    if not -90 <= latitude <= 90:
        raise ValueError('Latitude must be between -90 and 90')
    return [float(longitude), float(latitude)]


class LocationIn(BaseModel):
    address: str = Field(..., min_length=1, max_length=500)
    coordinates: List[float] = Field(..., description="[longitude, latitude]")
    contact_name: Optional[str] = Field(None, max_length=100)
    contact_phone: Optional[str] = Field(None, max_length=32)
    instructions: Optional[str] = Field(None, max_length=1000)

    @validator('address')
    def validate_address(cls, v):
        if not v or not v.strip():
            raise ValueError('Address cannot be empty')
        return v.strip()

    @validator('coordinates')
    def validate_coordinates(cls, v):
        return _check_coordinates(v)


class PointIn(BaseModel):
    """A bare position reported by a partner."""
    coordinates: List[float] = Field(..., description="[longitude, latitude]")
    address: Optional[str] = Field(None, max_length=500)

    @validator('coordinates')
    def validate_coordinates(cls, v):
        return _check_coordinates(v)


class DimensionsIn(BaseModel):
    length_cm: Optional[float] = Field(None, ge=0)
    width_cm: Optional[float] = Field(None, ge=0)
    height_cm: Optional[float] = Field(None, ge=0)


class PackageIn(BaseModel):
    description: Optional[str] = Field(None, max_length=1000)
    weight_kg: Optional[float] = Field(None, ge=0)
    dimensions: Optional[DimensionsIn] = None
    quantity: int = Field(default=1, ge=1)
    is_fragile: bool = False
    category: PackageCategory = PackageCategory.OTHER


class ScheduleIn(BaseModel):
    pickup_at: datetime
    is_flexible: bool = False


class DeliveryCreate(BaseModel):
    type: DeliveryType = DeliveryType.INSTANT
    pickup_location: LocationIn
    drop_location: LocationIn
    package: PackageIn = Field(default_factory=PackageIn)
    vehicle_type: VehicleType
    payment_method: PaymentMethod = PaymentMethod.CASH
    schedule: Optional[ScheduleIn] = None

    @validator('type')
    def validate_type(cls, v):
        if v == DeliveryType.CUSTOM_BID:
            raise ValueError('Custom bid deliveries are created through the custom bid endpoint')
        return v


class CustomBidDeliveryCreate(BaseModel):
    pickup_location: LocationIn
    drop_location: LocationIn
    package: PackageIn = Field(default_factory=PackageIn)
    vehicle_type: VehicleType
    proposed_price: float = Field(..., gt=0, description="Price the customer offers")
    schedule: Optional[ScheduleIn] = None


class BidCreate(BaseModel):
    price: float = Field(..., gt=0)
    estimated_pickup_time: Optional[datetime] = None
    message: Optional[str] = Field(None, max_length=500)


class BidAccept(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.CASH


class StatusUpdate(BaseModel):
    status: DeliveryStatus
    location: Optional[PointIn] = None
    reason: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RatingCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5 stars")
    comment: Optional[str] = Field(None, max_length=2000)


# Responses

class TimelineEntryResponse(BaseModel):
    status: str
    timestamp: datetime
    description: Optional[str]
    location: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class BidResponse(BaseModel):
    id: str
    partner_id: str
    price: float
    estimated_pickup_time: Optional[datetime] = None
    message: Optional[str] = None
    submitted_at: datetime

    class Config:
        from_attributes = True


class CustomBidResponse(BaseModel):
    proposed_price: Optional[float]
    expires_at: Optional[datetime]
    status: Optional[BidStatus]
    bids: List[BidResponse] = []

    class Config:
        from_attributes = True


class DeliveryResponse(BaseModel):
    id: str
    tracking_id: str
    customer_id: str
    partner_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    type: DeliveryType
    status: DeliveryStatus
    vehicle_type: VehicleType
    pickup_location: Dict[str, Any]
    drop_location: Dict[str, Any]
    package: Dict[str, Any]
    pricing: Dict[str, Any]
    payment: Dict[str, Any]
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None
    scheduled_pickup_at: Optional[datetime] = None
    rating: Optional[Dict[str, Any]] = None
    cancellation: Optional[Dict[str, Any]] = None
    custom_bid: Optional[CustomBidResponse] = None
    timeline: List[TimelineEntryResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class NearbyRequestResponse(BaseModel):
    distance_km: float
    delivery: DeliveryResponse
