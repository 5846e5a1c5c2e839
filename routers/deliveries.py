from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
import logging

from database.connection import get_db
from core.response import paginated_response
from models.user import UserRole
from models.delivery import DeliveryStatus
from routers.auth import get_current_user, require_role
from schemas.user import CurrentUser
from schemas.delivery import (
    DeliveryCreate, CustomBidDeliveryCreate, DeliveryResponse, BidCreate, BidAccept,
    BidResponse, CancelRequest, RatingCreate
)
from services import deliveries as delivery_service
from services import lifecycle, matching, settlement
from services.events import dispatcher
from services.partner import get_partner_for_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deliveries", tags=["deliveries"])

get_customer = require_role(UserRole.CUSTOMER, UserRole.ADMIN)


@router.post("", response_model=DeliveryResponse, status_code=status.HTTP_201_CREATED)
def create_delivery(
    delivery_data: DeliveryCreate,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    """Create an instant, scheduled or intercity delivery request"""
    delivery = delivery_service.create_delivery(db, current_user.id, delivery_data)
    dispatcher.dispatch_pending(db)
    return delivery


@router.post("/custom-bid", response_model=DeliveryResponse, status_code=status.HTTP_201_CREATED)
def create_custom_bid_delivery(
    delivery_data: CustomBidDeliveryCreate,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    """Create a delivery priced by partner bids"""
    delivery = delivery_service.create_custom_bid_delivery(db, current_user.id, delivery_data)
    dispatcher.dispatch_pending(db)
    return delivery


@router.get("")
def list_my_deliveries(
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status"),
    active_only: bool = Query(False),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=50),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    deliveries, total = delivery_service.list_customer_deliveries(
        db, current_user.id, status=status_filter, active_only=active_only, page=page, per_page=per_page
    )
    data = [DeliveryResponse.from_orm(d).dict() for d in deliveries]
    return paginated_response(data, page, per_page, total, message="Deliveries retrieved successfully")


@router.get("/track/{tracking_id}", response_model=DeliveryResponse)
def track_delivery(tracking_id: str, db: Session = Depends(get_db)):
    """Public lookup by tracking code"""
    return delivery_service.get_delivery_by_tracking_id(db, tracking_id)


@router.get("/{delivery_id}", response_model=DeliveryResponse)
def get_delivery(
    delivery_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return delivery_service.get_delivery_for_actor(db, delivery_id, current_user.id, current_user.role)


@router.post("/{delivery_id}/publish", response_model=DeliveryResponse)
def publish_delivery(
    delivery_id: str,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    """Open a pending delivery to nearby partners"""
    delivery = delivery_service.publish_delivery(db, delivery_id, current_user.id, current_user.role)
    dispatcher.dispatch_pending(db)
    return delivery


@router.post("/{delivery_id}/bids", response_model=BidResponse, status_code=status.HTTP_201_CREATED)
def submit_bid(
    delivery_id: str,
    bid_data: BidCreate,
    current_user: CurrentUser = Depends(require_role(UserRole.PARTNER)),
    db: Session = Depends(get_db)
):
    partner = get_partner_for_user(db, current_user.id)
    bid = matching.submit_bid(
        db, partner.id, delivery_id, bid_data.price,
        estimated_pickup_time=bid_data.estimated_pickup_time,
        message=bid_data.message
    )
    dispatcher.dispatch_pending(db)
    return bid


@router.get("/{delivery_id}/bids", response_model=List[BidResponse])
def list_bids(
    delivery_id: str,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    return matching.list_bids(db, delivery_id, current_user.id, current_user.role)


@router.post("/{delivery_id}/bids/{bid_id}/accept", response_model=DeliveryResponse)
def accept_bid(
    delivery_id: str,
    bid_id: str,
    accept_data: BidAccept,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    delivery = matching.accept_bid(db, current_user.id, delivery_id, bid_id, accept_data.payment_method)
    dispatcher.dispatch_pending(db)
    return delivery


@router.put("/{delivery_id}/cancel", response_model=DeliveryResponse)
def cancel_delivery(
    delivery_id: str,
    cancel_data: CancelRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Cancel as the owning customer, the assigned partner or an admin"""
    delivery = lifecycle.cancel_delivery(
        db, delivery_id, actor_id=current_user.id, actor_role=current_user.role, reason=cancel_data.reason
    )
    dispatcher.dispatch_pending(db)
    return delivery


@router.post("/{delivery_id}/rate", response_model=DeliveryResponse)
def rate_delivery(
    delivery_id: str,
    rating_data: RatingCreate,
    current_user: CurrentUser = Depends(get_customer),
    db: Session = Depends(get_db)
):
    delivery = settlement.rate_delivery(db, current_user.id, delivery_id, rating_data.rating, rating_data.comment)
    dispatcher.dispatch_pending(db)
    return delivery
