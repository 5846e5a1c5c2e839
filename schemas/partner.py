from pydantic import BaseModel, Field, validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from models.partner import AvailabilityStatus, VerificationStatus, VehicleType
from schemas.delivery import DeliveryResponse


class VehicleCreate(BaseModel):
    type: VehicleType
    model: str = Field(..., min_length=1, max_length=100)
    registration_number: str = Field(..., min_length=2, max_length=32)
    capacity_kg: Optional[float] = Field(None, gt=0)

    @validator('registration_number')
    def validate_registration_number(cls, v):
        v = v.strip().upper()
        if not v:
            raise ValueError('Registration number cannot be empty')
        return v


class VehicleUpdate(BaseModel):
    model: Optional[str] = Field(None, min_length=1, max_length=100)
    capacity_kg: Optional[float] = Field(None, gt=0)
    is_active: Optional[bool] = None


class VehicleVerificationUpdate(BaseModel):
    is_verified: bool
    notes: Optional[str] = Field(None, max_length=500)


class VehicleResponse(BaseModel):
    id: str
    partner_id: str
    type: VehicleType
    model: str
    registration_number: str
    capacity_kg: Optional[float] = None
    is_verified: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AvailabilityUpdate(BaseModel):
    status: AvailabilityStatus

    @validator('status')
    def validate_status(cls, v):
        if v == AvailabilityStatus.BUSY:
            raise ValueError('Busy is set by the system when a delivery is assigned')
        return v


class LocationUpdate(BaseModel):
    coordinates: List[float] = Field(..., description="[longitude, latitude]")
    address: Optional[str] = Field(None, max_length=500)

    @validator('coordinates')
    def validate_coordinates(cls, v):
        if len(v) != 2:
            raise ValueError('Coordinates must be a [longitude, latitude] pair')
        if not -180 <= v[0] <= 180 or not -90 <= v[1] <= 90:
            raise ValueError('Coordinates out of range')
        return v


class PartnerVerificationUpdate(BaseModel):
    status: VerificationStatus
    notes: Optional[str] = Field(None, max_length=500)


class PartnerResponse(BaseModel):
    id: str
    user_id: str
    verification_status: VerificationStatus
    availability_status: AvailabilityStatus
    current_location: Optional[Dict[str, Any]] = None
    location_updated_at: Optional[datetime] = None
    rating: float
    total_ratings: int
    total_deliveries: int
    total_earnings: float
    vehicles: List[VehicleResponse] = []
    created_at: datetime

    class Config:
        from_attributes = True


class EarningsSummary(BaseModel):
    partner_id: str
    since: Optional[datetime] = None
    total_deliveries: int
    total_earnings: float
    earnings_by_day: List[Dict[str, Any]]


class DashboardStats(BaseModel):
    partner_id: str
    rating: float
    total_ratings: int
    availability_status: AvailabilityStatus
    total_deliveries: int
    active_deliveries: int
    completed_deliveries: int
    cancelled_deliveries: int
    today_deliveries: int
    today_earnings: float
    total_earnings: float
    recent_deliveries: List[DeliveryResponse] = []
