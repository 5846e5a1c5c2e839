from typing import List, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
import logging

from database.connection import get_db
from core.response import paginated_response
from models.user import UserRole
from models.partner import Partner
from models.delivery import DeliveryStatus
from routers.auth import get_admin_user, get_current_partner, require_role
from schemas.user import CurrentUser
from schemas.delivery import DeliveryResponse, NearbyRequestResponse, StatusUpdate
from schemas.partner import (
    AvailabilityUpdate, DashboardStats, EarningsSummary, LocationUpdate, PartnerResponse, PartnerVerificationUpdate,
    VehicleCreate, VehicleResponse, VehicleUpdate, VehicleVerificationUpdate
)
from services import lifecycle, matching, settlement
from services import partner as partner_service
from services.events import dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/partners", tags=["partners"])


@router.post("/register", response_model=PartnerResponse, status_code=status.HTTP_201_CREATED)
def register_partner(
    current_user: CurrentUser = Depends(require_role(UserRole.CUSTOMER, UserRole.PARTNER)),
    db: Session = Depends(get_db)
):
    """Create a partner profile for the current user, pending verification"""
    return partner_service.register_partner(db, current_user.id)


@router.get("/me", response_model=PartnerResponse)
def get_my_profile(partner: Partner = Depends(get_current_partner)):
    return partner


@router.post("/vehicles", response_model=VehicleResponse, status_code=status.HTTP_201_CREATED)
def add_vehicle(
    vehicle_data: VehicleCreate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    return partner_service.add_vehicle(db, partner.id, vehicle_data)


@router.get("/vehicles", response_model=List[VehicleResponse])
def list_vehicles(
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    return partner_service.list_vehicles(db, partner.id)


@router.put("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def update_vehicle(
    vehicle_id: str,
    vehicle_data: VehicleUpdate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    """Edit a vehicle or take it in and out of service"""
    return partner_service.update_vehicle(db, partner.id, vehicle_id, vehicle_data)


@router.get("/dashboard", response_model=DashboardStats)
def get_dashboard(
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    return partner_service.dashboard_stats(db, partner.id)


@router.get("/deliveries")
def list_my_deliveries(
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=50),
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    """Deliveries assigned to the current partner, newest first"""
    deliveries, total = partner_service.list_partner_deliveries(
        db, partner.id, status=status_filter, page=page, per_page=per_page
    )
    data = [DeliveryResponse.from_orm(d).dict() for d in deliveries]
    return paginated_response(data, page, per_page, total, message="Deliveries retrieved successfully")


@router.put("/location", response_model=PartnerResponse)
def update_location(
    location_data: LocationUpdate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    longitude, latitude = location_data.coordinates
    updated = partner_service.update_location(db, partner.id, longitude, latitude, location_data.address)
    dispatcher.dispatch_pending(db)
    return updated


@router.put("/availability", response_model=PartnerResponse)
def set_availability(
    availability_data: AvailabilityUpdate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    return partner_service.set_availability(db, partner.id, availability_data.status)


@router.get("/earnings", response_model=EarningsSummary)
def get_earnings(
    since: Optional[datetime] = Query(None),
    days: int = Query(30, ge=1, le=365),
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    return settlement.partner_earnings(db, partner.id, since=since, days=days)


@router.get("/nearby-requests", response_model=List[NearbyRequestResponse])
def list_nearby_requests(
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    """Searching deliveries near the partner, nearest pickup first"""
    return [
        {"distance_km": distance, "delivery": delivery}
        for delivery, distance in matching.list_nearby_requests(db, partner.id)
    ]


@router.post("/deliveries/{delivery_id}/accept", response_model=DeliveryResponse)
def accept_delivery(
    delivery_id: str,
    vehicle_id: Optional[str] = Query(None),
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    delivery = matching.accept_delivery(db, partner.id, delivery_id, vehicle_id)
    dispatcher.dispatch_pending(db)
    return delivery


@router.put("/deliveries/{delivery_id}/status", response_model=DeliveryResponse)
def update_delivery_status(
    delivery_id: str,
    status_data: StatusUpdate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db)
):
    location = status_data.location.dict() if status_data.location else None
    delivery = lifecycle.update_delivery_status(
        db, partner.id, delivery_id, status_data.status, location=location, reason=status_data.reason
    )
    dispatcher.dispatch_pending(db)
    return delivery


# Admin verification endpoints

@router.put("/{partner_id}/verification", response_model=PartnerResponse)
def verify_partner(
    partner_id: str,
    verification_data: PartnerVerificationUpdate,
    admin: CurrentUser = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    logger.info(f"Admin {admin.id} setting partner {partner_id} to {verification_data.status.value}")
    return partner_service.set_verification_status(db, partner_id, verification_data.status, verification_data.notes)


@router.put("/vehicles/{vehicle_id}/verification", response_model=VehicleResponse)
def verify_vehicle(
    vehicle_id: str,
    verification_data: VehicleVerificationUpdate,
    admin: CurrentUser = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    logger.info(f"Admin {admin.id} setting vehicle {vehicle_id} verified={verification_data.is_verified}")
    return partner_service.set_vehicle_verification(
        db, vehicle_id, verification_data.is_verified, verification_data.notes
    )
