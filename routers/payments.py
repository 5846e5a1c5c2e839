from typing import Optional
from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import hmac
import logging

from database.connection import get_db
from core.config import settings
from core.exceptions import AuthenticationError
from core.response import paginated_response, success_response
from models.user import UserRole
from routers.auth import get_admin_user, get_current_user, require_role
from schemas.user import CurrentUser
from schemas.delivery import DeliveryResponse
from schemas.payment import GatewayWebhookEvent, PaymentConfirm, PaymentResponse, PayoutResult, RefundResult
from services import settlement
from services.events import dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


def _settlement_body(result: settlement.SettlementResult, message: str):
    return success_response(
        data=PaymentResponse.from_orm(result.payment).dict(),
        message=message if result.created else "Payment event already recorded",
        meta={"created": result.created}
    )


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)):
    """Shared-secret check in front of the gateway callback; no secret configured means no callbacks."""
    if not settings.PAYMENT_WEBHOOK_SECRET:
        logger.error("Payment webhook rejected: PAYMENT_WEBHOOK_SECRET is not configured")
        raise AuthenticationError("Payment webhook is not configured")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.PAYMENT_WEBHOOK_SECRET):
        logger.warning("Payment webhook rejected: bad or missing secret")
        raise AuthenticationError("Invalid webhook secret")


@router.post("/confirm")
def confirm_payment(
    payment_data: PaymentConfirm,
    current_user: CurrentUser = Depends(require_role(UserRole.CUSTOMER, UserRole.ADMIN)),
    db: Session = Depends(get_db)
):
    """Confirm a client-side payment for one of the customer's deliveries"""
    result = settlement.confirm_payment(
        db,
        payment_data.delivery_id,
        payment_data.gateway_event_id,
        amount=payment_data.amount,
        method=payment_data.payment_method,
        gateway_payment_id=payment_data.gateway_payment_id,
        actor_id=None if current_user.role == UserRole.ADMIN else current_user.id
    )
    dispatcher.dispatch_pending(db)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        content=jsonable_encoder(_settlement_body(result, "Payment confirmed successfully"))
    )


@router.post("/webhook", dependencies=[Depends(verify_webhook_secret)])
def payment_webhook(event: GatewayWebhookEvent, db: Session = Depends(get_db)):
    """Settle a gateway event whose signature was verified upstream"""
    if event.type == PAYMENT_SUCCEEDED:
        result = settlement.confirm_payment(
            db, event.delivery_id, event.event_id,
            amount=event.amount, method=event.method, gateway=event.gateway,
            gateway_payment_id=event.gateway_payment_id
        )
    elif event.type == PAYMENT_FAILED:
        result = settlement.record_payment_failure(
            db, event.delivery_id, event.event_id, event.amount,
            method=event.method, gateway=event.gateway,
            gateway_payment_id=event.gateway_payment_id,
            failure_message=event.failure_message
        )
    else:
        logger.info(f"Unhandled gateway event type: {event.type}")
        return {"received": True, "handled": False}

    dispatcher.dispatch_pending(db)
    return {"received": True, "handled": True, "created": result.created, "payment_id": result.payment.id}


@router.post("/refunds/{delivery_id}/result", response_model=DeliveryResponse)
def record_refund_result(
    delivery_id: str,
    refund_data: RefundResult,
    admin: CurrentUser = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    delivery = settlement.record_refund_result(db, delivery_id, refund_data)
    dispatcher.dispatch_pending(db)
    return delivery


@router.post("/{payment_id}/payout", response_model=PaymentResponse)
def mark_payout_processed(
    payment_id: str,
    payout_data: PayoutResult,
    admin: CurrentUser = Depends(get_admin_user),
    db: Session = Depends(get_db)
):
    return settlement.mark_payout_processed(db, payment_id, payout_data)


@router.get("")
def list_my_payments(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=50),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The current customer's payments, newest first"""
    payments, total = settlement.list_customer_payments(db, current_user.id, page=page, per_page=per_page)
    data = [PaymentResponse.from_orm(p).dict() for p in payments]
    return paginated_response(data, page, per_page, total, message="Payments retrieved successfully")


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return settlement.get_payment(db, payment_id, current_user.id, current_user.role)
