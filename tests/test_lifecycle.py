import itertools

import pytest

from core.exceptions import AuthorizationError, ResourceNotFoundError, StateConflictError, ValidationError
from models.delivery import CancelledBy, DeliveryStatus, PaymentMethod, PaymentStatus, RefundStatus
from models.partner import AvailabilityStatus
from models.payment import LedgerRefundStatus, Payment, PayoutStatus
from models.user import UserRole
from services import lifecycle, settlement

from conftest import drive_to

LEGAL = {
    (DeliveryStatus.ACCEPTED, DeliveryStatus.PICKED_UP),
    (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT),
    (DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVING),
    (DeliveryStatus.ARRIVING, DeliveryStatus.DELIVERED),
}


@pytest.mark.parametrize("current,requested", list(itertools.product(DeliveryStatus, DeliveryStatus)))
def test_transition_table(current, requested):
    terminal = current in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)
    if requested == DeliveryStatus.CANCELLED:
        expected = not terminal
    else:
        expected = (current, requested) in LEGAL

    assert lifecycle.can_transition(current, requested) is expected


def test_full_progression_to_delivered_with_cash(db, partner, assigned_delivery):
    delivery = assigned_delivery()

    delivered = drive_to(db, partner, delivery, DeliveryStatus.DELIVERED)

    db.refresh(partner)
    assert delivered.status == DeliveryStatus.DELIVERED
    assert [entry.status for entry in delivered.timeline] == [
        "created", "searching", "accepted", "picked-up", "in-transit", "arriving", "delivered"
    ]
    timestamps = [entry.timestamp for entry in delivered.timeline]
    assert timestamps == sorted(timestamps)
    assert partner.total_deliveries == 1
    assert partner.total_earnings == pytest.approx(378 * 0.8)
    assert partner.availability_status == AvailabilityStatus.ONLINE
    assert delivered.payment_status == PaymentStatus.COMPLETED
    assert delivered.paid_at is not None
    assert db.query(Payment).count() == 0


def test_card_delivery_creates_one_completion_record(db, partner, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)

    delivered = drive_to(db, partner, delivery, DeliveryStatus.DELIVERED)

    payment = db.query(Payment).one()
    assert delivered.payment_status == PaymentStatus.COMPLETED
    assert payment.gateway_event_id == settlement.completion_event_id(delivery.id)
    assert payment.amount == 378
    assert payment.payout_amount == pytest.approx(302.4)
    assert payment.payout_status == PayoutStatus.PENDING


def test_prepaid_delivery_is_not_charged_twice(db, partner, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)
    settlement.confirm_payment(db, delivery.id, "evt_prepaid")

    drive_to(db, partner, delivery, DeliveryStatus.DELIVERED)

    assert db.query(Payment).count() == 1


@pytest.mark.parametrize("skip_to", [DeliveryStatus.DELIVERED, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVING])
def test_skipping_steps_is_rejected_without_writes(db, partner, assigned_delivery, skip_to):
    delivery = assigned_delivery()

    with pytest.raises(StateConflictError) as exc_info:
        lifecycle.update_delivery_status(db, partner.id, delivery.id, skip_to)

    db.refresh(delivery)
    assert exc_info.value.details["current"] == "accepted"
    assert exc_info.value.details["requested"] == skip_to.value
    assert delivery.status == DeliveryStatus.ACCEPTED
    assert delivery.timeline[-1].status == "accepted"


def test_picked_up_cannot_jump_to_delivered(db, partner, assigned_delivery):
    delivery = drive_to(db, partner, assigned_delivery(), DeliveryStatus.PICKED_UP)

    with pytest.raises(StateConflictError):
        lifecycle.update_delivery_status(db, partner.id, delivery.id, DeliveryStatus.DELIVERED)


def test_status_strings_are_accepted_and_unknown_ones_rejected(db, partner, assigned_delivery):
    delivery = assigned_delivery()

    moved = lifecycle.update_delivery_status(db, partner.id, delivery.id, "picked-up")
    assert moved.status == DeliveryStatus.PICKED_UP

    with pytest.raises(ValidationError):
        lifecycle.update_delivery_status(db, partner.id, delivery.id, "teleported")


def test_only_the_assigned_partner_moves_a_delivery(db, make_partner, assigned_delivery):
    delivery = assigned_delivery()
    other = make_partner()

    with pytest.raises(ResourceNotFoundError):
        lifecycle.update_delivery_status(db, other.id, delivery.id, DeliveryStatus.PICKED_UP)


def test_explicit_location_is_recorded_on_the_timeline(db, partner, assigned_delivery):
    delivery = assigned_delivery()
    location = {"coordinates": [77.61, 12.97], "address": "Pickup gate"}

    moved = lifecycle.update_delivery_status(db, partner.id, delivery.id, DeliveryStatus.PICKED_UP, location=location)

    assert moved.timeline[-1].location == location


def test_customer_cancels_assigned_delivery(db, customer, partner, assigned_delivery):
    delivery = assigned_delivery()

    cancelled = lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)

    db.refresh(partner)
    assert cancelled.status == DeliveryStatus.CANCELLED
    assert cancelled.cancelled_by == CancelledBy.USER
    assert cancelled.cancellation_reason == "Cancelled by user"
    assert cancelled.cancelled_by_id == customer.id
    assert cancelled.refund_status == RefundStatus.NOT_APPLICABLE
    assert cancelled.timeline[-1].status == "cancelled"
    assert partner.availability_status == AvailabilityStatus.ONLINE


def test_partner_cancels_through_status_update(db, partner, assigned_delivery):
    delivery = assigned_delivery()

    cancelled = lifecycle.update_delivery_status(
        db, partner.id, delivery.id, DeliveryStatus.CANCELLED, reason="Vehicle broke down"
    )

    assert cancelled.cancelled_by == CancelledBy.PARTNER
    assert cancelled.cancellation_reason == "Vehicle broke down"


def test_admin_can_cancel_a_searching_delivery(db, admin, new_delivery):
    delivery = new_delivery()

    cancelled = lifecycle.cancel_delivery(db, delivery.id, admin.id, UserRole.ADMIN)

    assert cancelled.cancelled_by == CancelledBy.ADMIN
    assert cancelled.cancellation_reason == "Cancelled by admin"


def test_strangers_cannot_cancel(db, make_user, make_partner, assigned_delivery):
    delivery = assigned_delivery()
    stranger = make_user(UserRole.CUSTOMER)
    other_partner = make_partner()

    with pytest.raises(AuthorizationError):
        lifecycle.cancel_delivery(db, delivery.id, stranger.id, UserRole.CUSTOMER)
    with pytest.raises(AuthorizationError):
        lifecycle.cancel_delivery(db, delivery.id, other_partner.user_id, UserRole.PARTNER)


@pytest.mark.parametrize("final_status", [DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED])
def test_terminal_deliveries_cannot_be_cancelled(db, customer, partner, assigned_delivery, final_status):
    delivery = assigned_delivery()
    if final_status == DeliveryStatus.DELIVERED:
        drive_to(db, partner, delivery, DeliveryStatus.DELIVERED)
    else:
        lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)

    with pytest.raises(StateConflictError):
        lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)


def test_cancelling_a_paid_delivery_opens_a_pending_refund(db, customer, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)
    settlement.confirm_payment(db, delivery.id, "evt_paid")

    cancelled = lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER, reason="Changed plans")

    payment = db.query(Payment).one()
    assert cancelled.refund_status == RefundStatus.PENDING
    assert payment.refund_status == LedgerRefundStatus.PENDING
    assert payment.refund_amount == cancelled.total_price
    assert payment.refund_reason == "Changed plans"


def test_cancelling_an_unpaid_delivery_has_no_refund(db, customer, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)

    cancelled = lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)

    assert cancelled.refund_status == RefundStatus.NOT_APPLICABLE
    assert db.query(Payment).count() == 0
