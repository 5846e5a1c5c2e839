import pytest
from sqlalchemy.exc import IntegrityError

from core.exceptions import AuthorizationError, ResourceNotFoundError, StateConflictError, ValidationError
from models.delivery import DeliveryStatus, PaymentMethod, PaymentStatus, RefundStatus
from models.event import DomainEvent, EventType
from models.payment import LedgerRefundStatus, Payment, PaymentGateway, PayoutStatus
from models.user import UserRole
from schemas.payment import PayoutResult, RefundResult
from services import lifecycle, settlement

from conftest import drive_to


def test_replayed_gateway_event_is_recorded_once(db, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)

    first = settlement.confirm_payment(db, delivery.id, "evt_1", gateway_payment_id="pi_1")
    replay = settlement.confirm_payment(db, delivery.id, "evt_1", gateway_payment_id="pi_1")

    db.refresh(delivery)
    assert first.created is True
    assert replay.created is False
    assert replay.payment.id == first.payment.id
    assert db.query(Payment).count() == 1
    assert delivery.payment_status == PaymentStatus.COMPLETED
    assert delivery.payment_transaction_id == "pi_1"
    assert first.payment.payout_amount == pytest.approx(302.4)

    settled = db.query(DomainEvent).filter(DomainEvent.type == EventType.PAYMENT_SETTLED).count()
    assert settled == 1


def test_gateway_success_after_card_delivery_does_not_pay_twice(db, partner, assigned_delivery):
    delivery = drive_to(db, partner, assigned_delivery(PaymentMethod.CARD))
    completion = db.query(Payment).filter(Payment.delivery_id == delivery.id).one()

    late = settlement.confirm_payment(db, delivery.id, "evt_stripe_1", gateway_payment_id="pi_late")

    assert late.created is False
    assert late.payment.id == completion.id
    completed = db.query(Payment).filter(
        Payment.delivery_id == delivery.id,
        Payment.status == PaymentStatus.COMPLETED
    ).all()
    assert [p.payout_amount for p in completed] == [pytest.approx(302.4)]


def test_second_success_event_returns_the_first_payment(db, new_delivery):
    delivery = new_delivery()

    first = settlement.confirm_payment(db, delivery.id, "evt_a")
    second = settlement.confirm_payment(db, delivery.id, "evt_b")

    assert first.created is True
    assert second.created is False
    assert second.payment.id == first.payment.id
    assert db.query(Payment).filter(Payment.delivery_id == delivery.id).count() == 1
    assert settlement.get_payment_by_event(db, "evt_b") is None


def test_database_rejects_a_second_completed_payment(db, new_delivery):
    delivery = new_delivery()
    settlement.confirm_payment(db, delivery.id, "evt_a")

    db.add(Payment(
        delivery_id=delivery.id,
        customer_id=delivery.customer_id,
        amount=delivery.total_price,
        method=PaymentMethod.CARD,
        status=PaymentStatus.COMPLETED,
        gateway=PaymentGateway.STRIPE,
        gateway_event_id="evt_direct",
    ))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_gateway_event_cannot_be_reused_for_another_delivery(db, new_delivery):
    first, second = new_delivery(), new_delivery()
    settlement.confirm_payment(db, first.id, "evt_shared")

    with pytest.raises(StateConflictError):
        settlement.confirm_payment(db, second.id, "evt_shared")


def test_only_the_owner_confirms_payment(db, make_user, new_delivery):
    delivery = new_delivery()
    stranger = make_user(UserRole.CUSTOMER)

    with pytest.raises(AuthorizationError):
        settlement.confirm_payment(db, delivery.id, "evt_x", actor_id=stranger.id)


def test_cancelled_delivery_takes_no_payment(db, customer, new_delivery):
    delivery = new_delivery()
    lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)

    with pytest.raises(StateConflictError):
        settlement.confirm_payment(db, delivery.id, "evt_late")

    assert db.query(Payment).count() == 0


def test_failed_charge_then_success(db, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)

    failed = settlement.record_payment_failure(
        db, delivery.id, "evt_fail", amount=delivery.total_price, failure_message="Card declined"
    )
    db.refresh(delivery)
    assert failed.payment.status == PaymentStatus.FAILED
    assert failed.payment.payout_amount is None
    assert delivery.payment_status == PaymentStatus.FAILED

    settlement.confirm_payment(db, delivery.id, "evt_ok")
    db.refresh(delivery)
    assert delivery.payment_status == PaymentStatus.COMPLETED
    assert db.query(Payment).count() == 2

    # a late failure does not undo the success
    settlement.record_payment_failure(db, delivery.id, "evt_fail_late", amount=delivery.total_price)
    db.refresh(delivery)
    assert delivery.payment_status == PaymentStatus.COMPLETED


def test_refund_failure_can_be_retried_until_processed(db, customer, assigned_delivery):
    delivery = assigned_delivery(PaymentMethod.CARD)
    settlement.confirm_payment(db, delivery.id, "evt_paid")
    lifecycle.cancel_delivery(db, delivery.id, customer.id, UserRole.CUSTOMER)

    failed = settlement.record_refund_result(db, delivery.id, RefundResult(succeeded=False))
    assert failed.refund_status == RefundStatus.FAILED
    assert db.query(Payment).one().refund_status == LedgerRefundStatus.FAILED

    done = settlement.record_refund_result(db, delivery.id, RefundResult(succeeded=True, transaction_id="re_1"))
    payment = db.query(Payment).one()
    assert done.refund_status == RefundStatus.PROCESSED
    assert done.payment_status == PaymentStatus.REFUNDED
    assert payment.refund_status == LedgerRefundStatus.PROCESSED
    assert payment.refund_transaction_id == "re_1"
    assert payment.refund_processed_at is not None

    with pytest.raises(StateConflictError):
        settlement.record_refund_result(db, delivery.id, RefundResult(succeeded=True))


def test_refund_result_needs_a_pending_refund(db, customer, new_delivery):
    active = new_delivery()
    cancelled_unpaid = new_delivery()
    lifecycle.cancel_delivery(db, cancelled_unpaid.id, customer.id, UserRole.CUSTOMER)

    with pytest.raises(StateConflictError):
        settlement.record_refund_result(db, active.id, RefundResult(succeeded=True))
    with pytest.raises(StateConflictError) as exc_info:
        settlement.record_refund_result(db, cancelled_unpaid.id, RefundResult(succeeded=True))
    assert exc_info.value.details["current"] == "not-applicable"


def test_payout_is_processed_once(db, partner, assigned_delivery):
    delivery = drive_to(db, partner, assigned_delivery(PaymentMethod.UPI))
    payment = db.query(Payment).filter(Payment.delivery_id == delivery.id).one()

    failed = settlement.mark_payout_processed(db, payment.id, PayoutResult(succeeded=False))
    assert failed.payout_status == PayoutStatus.FAILED

    paid = settlement.mark_payout_processed(db, payment.id, PayoutResult(succeeded=True, transaction_id="po_1"))
    assert paid.payout_status == PayoutStatus.COMPLETED
    assert paid.payout_transaction_id == "po_1"

    with pytest.raises(StateConflictError):
        settlement.mark_payout_processed(db, payment.id, PayoutResult(succeeded=True))


def test_rating_folds_into_partner_average(db, customer, partner, assigned_delivery):
    first = drive_to(db, partner, assigned_delivery())
    second = drive_to(db, partner, assigned_delivery())

    rated = settlement.rate_delivery(db, customer.id, first.id, 5, comment="Great")
    settlement.rate_delivery(db, customer.id, second.id, 3)

    db.refresh(partner)
    assert rated.rating == {"value": 5, "comment": "Great", "created_at": rated.rated_at}
    assert partner.total_ratings == 2
    assert partner.rating == pytest.approx(4.0)


def test_delivery_is_rated_once(db, customer, partner, assigned_delivery):
    delivery = drive_to(db, partner, assigned_delivery())
    settlement.rate_delivery(db, customer.id, delivery.id, 4)

    with pytest.raises(StateConflictError):
        settlement.rate_delivery(db, customer.id, delivery.id, 2)

    db.refresh(partner)
    assert partner.total_ratings == 1
    assert partner.rating == pytest.approx(4.0)


@pytest.mark.parametrize("value", [0, 6, -1])
def test_rating_out_of_range(db, customer, partner, assigned_delivery, value):
    delivery = drive_to(db, partner, assigned_delivery())

    with pytest.raises(ValidationError):
        settlement.rate_delivery(db, customer.id, delivery.id, value)


def test_rating_needs_a_delivered_delivery_and_its_owner(db, customer, make_user, partner, assigned_delivery):
    in_progress = assigned_delivery()

    with pytest.raises(StateConflictError):
        settlement.rate_delivery(db, customer.id, in_progress.id, 5)

    delivered = drive_to(db, partner, in_progress)
    with pytest.raises(AuthorizationError):
        settlement.rate_delivery(db, make_user(UserRole.CUSTOMER).id, delivered.id, 5)


def test_partner_earnings_are_the_payout_share(db, partner, assigned_delivery):
    drive_to(db, partner, assigned_delivery())
    drive_to(db, partner, assigned_delivery(PaymentMethod.CARD))
    in_progress = assigned_delivery()

    earnings = settlement.partner_earnings(db, partner.id)

    db.refresh(partner)
    assert earnings["total_deliveries"] == 2
    assert earnings["total_earnings"] == pytest.approx(604.8)
    assert sum(day["earnings"] for day in earnings["earnings_by_day"]) == pytest.approx(604.8)
    assert partner.total_earnings == pytest.approx(604.8)
    assert in_progress.status == DeliveryStatus.ACCEPTED


def test_customer_payment_ledger_is_paginated(db, customer, make_user, new_delivery):
    for n in range(3):
        settlement.confirm_payment(db, new_delivery().id, f"evt_ledger_{n}")
    other = make_user(UserRole.CUSTOMER)
    settlement.confirm_payment(db, new_delivery(owner=other).id, "evt_other_customer")

    page, total = settlement.list_customer_payments(db, customer.id, page=1, per_page=2)
    rest, _ = settlement.list_customer_payments(db, customer.id, page=2, per_page=2)

    assert total == 3
    assert len(page) == 2
    assert len(rest) == 1
    assert {p.customer_id for p in page + rest} == {customer.id}


def test_payment_is_visible_to_its_parties_only(db, customer, admin, partner, make_user, assigned_delivery):
    delivery = drive_to(db, partner, assigned_delivery(PaymentMethod.CARD))
    payment = db.query(Payment).filter(Payment.delivery_id == delivery.id).one()

    assert settlement.get_payment(db, payment.id, customer.id, UserRole.CUSTOMER).id == payment.id
    assert settlement.get_payment(db, payment.id, partner.user_id, UserRole.PARTNER).id == payment.id
    assert settlement.get_payment(db, payment.id, admin.id, UserRole.ADMIN).id == payment.id

    with pytest.raises(AuthorizationError):
        settlement.get_payment(db, payment.id, make_user(UserRole.CUSTOMER).id, UserRole.CUSTOMER)
    with pytest.raises(ResourceNotFoundError):
        settlement.get_payment(db, "missing", admin.id, UserRole.ADMIN)
