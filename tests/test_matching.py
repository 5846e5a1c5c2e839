import pytest

from core.constants import NEARBY_RESULT_LIMIT
from core.exceptions import AuthorizationError, ResourceNotFoundError, StateConflictError, ValidationError
from models.delivery import DeliveryStatus
from models.event import DomainEvent, EventType
from models.partner import AvailabilityStatus, Vehicle, VehicleType
from services import matching

from conftest import FAR_FROM_PICKUP, NEAR_PICKUP


def test_nearby_requests_filters_by_radius_and_vehicle_type(db, new_delivery, partner):
    near = new_delivery()
    new_delivery(pickup=FAR_FROM_PICKUP)
    new_delivery(vehicle_type=VehicleType.TRUCK)

    results = matching.list_nearby_requests(db, partner.id)

    assert [delivery.id for delivery, _ in results] == [near.id]
    assert 0 < results[0][1] < 1.0


def test_nearby_requests_are_sorted_nearest_first(db, new_delivery, partner):
    farther = new_delivery(pickup=[77.6200, 12.9800])
    closest = new_delivery(pickup=NEAR_PICKUP)

    results = matching.list_nearby_requests(db, partner.id)

    assert [delivery.id for delivery, _ in results] == [closest.id, farther.id]
    assert results[0][1] <= results[1][1]


def test_nearby_requests_are_capped(db, new_delivery, partner):
    for _ in range(NEARBY_RESULT_LIMIT + 2):
        new_delivery()

    assert len(matching.list_nearby_requests(db, partner.id)) == NEARBY_RESULT_LIMIT


def test_nearby_requests_skip_assigned_deliveries(db, new_delivery, make_partner, partner):
    taken = new_delivery()
    open_delivery = new_delivery()
    other = make_partner()
    matching.accept_delivery(db, other.id, taken.id)

    results = matching.list_nearby_requests(db, partner.id)

    assert [delivery.id for delivery, _ in results] == [open_delivery.id]


def test_nearby_requests_need_approval(db, make_partner):
    pending = make_partner(approved=False)

    with pytest.raises(AuthorizationError):
        matching.list_nearby_requests(db, pending.id)


def test_nearby_requests_need_partner_online(db, make_partner):
    offline = make_partner(online=False)

    with pytest.raises(StateConflictError):
        matching.list_nearby_requests(db, offline.id)


def test_nearby_requests_need_a_verified_vehicle(db, make_partner):
    unverified = make_partner(vehicle_verified=False)

    with pytest.raises(StateConflictError):
        matching.list_nearby_requests(db, unverified.id)


def test_accept_delivery_assigns_partner_and_vehicle(db, new_delivery, partner):
    delivery = new_delivery()

    accepted = matching.accept_delivery(db, partner.id, delivery.id)

    db.refresh(partner)
    vehicle = db.query(Vehicle).filter(Vehicle.partner_id == partner.id).one()
    assert accepted.status == DeliveryStatus.ACCEPTED
    assert accepted.partner_id == partner.id
    assert accepted.vehicle_id == vehicle.id
    assert accepted.timeline[-1].status == "accepted"
    assert accepted.timeline[-1].location["coordinates"] == NEAR_PICKUP
    assert partner.availability_status == AvailabilityStatus.BUSY

    event_types = [e.type for e in db.query(DomainEvent).filter(DomainEvent.delivery_id == delivery.id)]
    assert EventType.DELIVERY_ACCEPTED in event_types


def test_second_partner_cannot_take_an_accepted_delivery(db, new_delivery, make_partner, partner):
    delivery = new_delivery()
    rival = make_partner()
    matching.accept_delivery(db, partner.id, delivery.id)

    with pytest.raises(StateConflictError):
        matching.accept_delivery(db, rival.id, delivery.id)

    db.refresh(rival)
    assert rival.availability_status == AvailabilityStatus.ONLINE


def test_partner_with_active_delivery_cannot_accept_another(db, new_delivery, partner):
    first = new_delivery()
    second = new_delivery()
    matching.accept_delivery(db, partner.id, first.id)

    with pytest.raises(StateConflictError):
        matching.accept_delivery(db, partner.id, second.id)

    db.refresh(second)
    assert second.status == DeliveryStatus.SEARCHING
    assert second.partner_id is None


def test_vehicle_type_mismatch_is_rejected(db, new_delivery, make_partner):
    bike_partner = make_partner(vehicle_type=VehicleType.BIKE)
    delivery = new_delivery(vehicle_type=VehicleType.CAR)
    bike = db.query(Vehicle).filter(Vehicle.partner_id == bike_partner.id).one()

    with pytest.raises(ValidationError):
        matching.accept_delivery(db, bike_partner.id, delivery.id, vehicle_id=bike.id)
    with pytest.raises(ValidationError):
        matching.accept_delivery(db, bike_partner.id, delivery.id)


def test_someone_elses_vehicle_is_rejected(db, new_delivery, make_partner, partner):
    other = make_partner()
    other_vehicle = db.query(Vehicle).filter(Vehicle.partner_id == other.id).one()
    delivery = new_delivery()

    with pytest.raises(AuthorizationError):
        matching.accept_delivery(db, partner.id, delivery.id, vehicle_id=other_vehicle.id)


def test_unknown_vehicle_is_not_found(db, new_delivery, partner):
    delivery = new_delivery()

    with pytest.raises(ResourceNotFoundError):
        matching.accept_delivery(db, partner.id, delivery.id, vehicle_id="missing")


def test_offline_partner_cannot_accept(db, new_delivery, make_partner):
    offline = make_partner(online=False)
    delivery = new_delivery()

    with pytest.raises(StateConflictError):
        matching.accept_delivery(db, offline.id, delivery.id)


def test_custom_bid_delivery_cannot_be_accepted_directly(db, new_custom_bid_delivery, partner):
    delivery = new_custom_bid_delivery()

    with pytest.raises(StateConflictError):
        matching.accept_delivery(db, partner.id, delivery.id)
