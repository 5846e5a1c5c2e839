import itertools

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.connection import build_engine, create_tables
from models.user import User, UserRole
from models.partner import Partner, Vehicle, VehicleType, VerificationStatus, AvailabilityStatus
from models.delivery import DeliveryStatus, PaymentMethod
from schemas.delivery import DeliveryCreate, CustomBidDeliveryCreate, LocationIn
from services import deliveries, lifecycle, matching
from services.events import dispatcher
from services.geo import DistanceProvider, RouteEstimate

# MG Road -> Indiranagar, Bengaluru, as [longitude, latitude]
PICKUP = [77.5946, 12.9716]
DROP = [77.6408, 12.9784]
NEAR_PICKUP = [77.6000, 12.9750]   # ~0.7 km from pickup
FAR_FROM_PICKUP = [77.7000, 13.0500]  # ~14 km from pickup

PROGRESSION = [
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.ARRIVING,
    DeliveryStatus.DELIVERED,
]


class FixedDistance(DistanceProvider):
    name = "fixed"

    def __init__(self, distance_km=10.0, duration_min=20.0):
        self.distance_km = distance_km
        self.duration_min = duration_min

    def estimate(self, origin, destination):
        return RouteEstimate(distance_km=self.distance_km, duration_min=self.duration_min)


class FailingDistance(DistanceProvider):
    name = "maps"

    def estimate(self, origin, destination):
        raise ConnectionError("maps API timed out")


def delivery_request(vehicle_type=VehicleType.CAR, pickup=PICKUP, **overrides):
    data = dict(
        pickup_location=LocationIn(address="MG Road, Bengaluru", coordinates=pickup),
        drop_location=LocationIn(address="Indiranagar, Bengaluru", coordinates=DROP),
        vehicle_type=vehicle_type,
    )
    data.update(overrides)
    return DeliveryCreate(**data)


def custom_bid_request(proposed_price, vehicle_type=VehicleType.CAR, **overrides):
    data = dict(
        pickup_location=LocationIn(address="MG Road, Bengaluru", coordinates=PICKUP),
        drop_location=LocationIn(address="Indiranagar, Bengaluru", coordinates=DROP),
        vehicle_type=vehicle_type,
        proposed_price=proposed_price,
    )
    data.update(overrides)
    return CustomBidDeliveryCreate(**data)


def drive_to(db, partner, delivery, until=DeliveryStatus.DELIVERED):
    """Walk an accepted delivery forward one legal step at a time."""
    for status in PROGRESSION:
        delivery = lifecycle.update_delivery_status(db, partner.id, delivery.id, status)
        if status == until:
            break
    return delivery


@pytest.fixture(autouse=True)
def reset_dispatcher():
    dispatcher.clear()
    yield
    dispatcher.clear()


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(role=UserRole.CUSTOMER):
        n = next(counter)
        user = User(email=f"{role.value}{n}@example.com", name=f"{role.value.title()} {n}", role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def customer(make_user):
    return make_user(UserRole.CUSTOMER)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def make_partner(db, make_user):
    counter = itertools.count(1)

    def _make(vehicle_type=VehicleType.CAR, location=NEAR_PICKUP, approved=True, online=True, vehicle_verified=True):
        n = next(counter)
        user = make_user(UserRole.PARTNER)
        partner = Partner(
            user_id=user.id,
            verification_status=VerificationStatus.APPROVED if approved else VerificationStatus.PENDING,
            availability_status=AvailabilityStatus.ONLINE if online else AvailabilityStatus.OFFLINE,
            current_longitude=location[0] if location else None,
            current_latitude=location[1] if location else None,
            current_address="Near MG Road" if location else None,
        )
        db.add(partner)
        db.flush()
        if vehicle_type is not None:
            db.add(Vehicle(
                partner_id=partner.id,
                type=vehicle_type,
                model="Test Model",
                registration_number=f"ka01ab{n:04d}",
                is_verified=vehicle_verified,
                is_active=True,
            ))
        db.commit()
        db.refresh(partner)
        return partner

    return _make


@pytest.fixture
def partner(make_partner):
    return make_partner()


@pytest.fixture
def new_delivery(db, customer):
    """Create a delivery priced off a fixed route (10 km / 20 min by default), off-peak."""
    def _create(owner=None, distance_km=10.0, duration_min=20.0, peak=False, **overrides):
        return deliveries.create_delivery(
            db, (owner or customer).id, delivery_request(**overrides),
            distance_provider=FixedDistance(distance_km, duration_min),
            is_peak_hour=peak
        )

    return _create


@pytest.fixture
def new_custom_bid_delivery(db, customer):
    def _create(proposed_price=300.0, distance_km=10.0, duration_min=20.0, **overrides):
        return deliveries.create_custom_bid_delivery(
            db, customer.id, custom_bid_request(proposed_price, **overrides),
            distance_provider=FixedDistance(distance_km, duration_min),
            is_peak_hour=False
        )

    return _create


@pytest.fixture
def assigned_delivery(db, new_delivery, partner):
    """A delivery already accepted by ``partner``."""
    def _create(payment_method=PaymentMethod.CASH):
        delivery = new_delivery(payment_method=payment_method)
        return matching.accept_delivery(db, partner.id, delivery.id)

    return _create
