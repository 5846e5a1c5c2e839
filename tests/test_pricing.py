import logging
from datetime import datetime

import pytest

from core.constants import MIN_BID_RATIO, TAX_RATE
from core.exceptions import ValidationError
from models.partner import VehicleType
from services import pricing


def test_car_off_peak_breakdown():
    fare = pricing.calculate_price(10, 20, VehicleType.CAR, is_peak_hour=False)

    assert fare.base_fare == 80
    assert fare.distance_fare == 200
    assert fare.time_fare == 40
    assert fare.surge_fare == 0
    assert fare.tax == pytest.approx(57.6)
    assert fare.total == 378


def test_car_peak_adds_half_the_fare_as_surge():
    fare = pricing.calculate_price(10, 20, VehicleType.CAR, is_peak_hour=True)

    assert fare.surge_fare == pytest.approx(160)
    assert fare.subtotal == pytest.approx(480)
    assert fare.tax == pytest.approx(86.4)
    assert fare.total == 566


@pytest.mark.parametrize("vehicle_type,base_fare,expected_total", [
    (VehicleType.BIKE, 30, 35),
    (VehicleType.AUTO, 50, 59),
    (VehicleType.CAR, 80, 94),
    (VehicleType.VAN, 120, 142),
    (VehicleType.TRUCK, 200, 236),
])
def test_base_fare_per_vehicle_type(vehicle_type, base_fare, expected_total):
    fare = pricing.calculate_price(0, 0, vehicle_type)

    assert fare.base_fare == base_fare
    assert fare.total == expected_total


def test_per_km_and_per_minute_rates():
    fare = pricing.calculate_price(4, 10, "van")

    assert fare.distance_fare == 100
    assert fare.time_fare == 25


def test_total_is_rounded_once_at_the_end():
    # bike: 30 + 5*10 + 15*1 = 95, tax 17.1 -> 112.1
    fare = pricing.calculate_price(5, 15, VehicleType.BIKE)

    assert fare.tax == pytest.approx(95 * TAX_RATE)
    assert fare.total == 112
    assert isinstance(fare.total, int)


def test_unknown_vehicle_type_is_priced_as_bike_and_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="services.pricing"):
        fare = pricing.calculate_price(5, 15, "hovercraft")

    assert fare.base_fare == 30
    assert fare.total == 112
    assert "hovercraft" in caplog.text


def test_negative_inputs_are_rejected_as_validation_errors():
    with pytest.raises(ValidationError) as exc_info:
        pricing.calculate_price(-1, 10, VehicleType.CAR)
    assert exc_info.value.status_code == 422
    assert exc_info.value.details["field"] == "distance_km"

    with pytest.raises(ValidationError) as exc_info:
        pricing.calculate_price(1, -10, VehicleType.CAR)
    assert exc_info.value.details["field"] == "duration_min"


def test_minimum_bid_price_is_seventy_percent():
    assert MIN_BID_RATIO == 0.7
    assert pricing.minimum_bid_price(1200) == 840
    assert pricing.minimum_bid_price(378) == pytest.approx(264.6)


@pytest.mark.parametrize("hour,expected", [
    (7, False),
    (8, True),
    (9, True),
    (10, False),
    (17, True),
    (19, True),
    (20, False),
    (23, False),
])
def test_is_peak_hour(hour, expected):
    assert pricing.is_peak_hour(datetime(2024, 5, 6, hour, 30), peak_hours="8-10,17-20") is expected


def test_parse_peak_hours_rejects_bad_ranges():
    assert pricing.parse_peak_hours("") == []
    with pytest.raises(ValueError):
        pricing.parse_peak_hours("10-8")
    with pytest.raises(ValueError):
        pricing.parse_peak_hours("25-26")
