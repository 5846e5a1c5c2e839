"""
Fare calculation for deliveries.

Every function here is pure apart from ``is_peak_hour`` reading the clock
when no moment is passed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union
import logging

from core.config import settings
from core.constants import TAX_RATE, PEAK_SURGE_FACTOR, MIN_BID_RATIO, DEFAULT_VEHICLE_TYPE
from core.exceptions import ValidationError
from models.partner import VehicleType

logger = logging.getLogger(__name__)

BASE_FARE_BY_TYPE = {
    VehicleType.BIKE: 30,
    VehicleType.AUTO: 50,
    VehicleType.CAR: 80,
    VehicleType.VAN: 120,
    VehicleType.TRUCK: 200,
}

RATE_PER_KM_BY_TYPE = {
    VehicleType.BIKE: 10,
    VehicleType.AUTO: 15,
    VehicleType.CAR: 20,
    VehicleType.VAN: 25,
    VehicleType.TRUCK: 30,
}

RATE_PER_MINUTE_BY_TYPE = {
    VehicleType.BIKE: 1,
    VehicleType.AUTO: 1.5,
    VehicleType.CAR: 2,
    VehicleType.VAN: 2.5,
    VehicleType.TRUCK: 3,
}


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: float
    distance_fare: float
    time_fare: float
    surge_fare: float
    tax: float
    total: int

    @property
    def subtotal(self) -> float:
        return self.base_fare + self.distance_fare + self.time_fare + self.surge_fare


def resolve_vehicle_type(vehicle_type: Union[VehicleType, str, None]) -> VehicleType:
    """Map a vehicle type to its tariff tier.

    Unknown types are charged as bikes. This silently under-prices a bad
    request, so it is logged every time it happens.
    """
    try:
        return VehicleType(vehicle_type)
    except ValueError:
        logger.warning(f"Unknown vehicle type {vehicle_type!r}, pricing as {DEFAULT_VEHICLE_TYPE}")
        return VehicleType(DEFAULT_VEHICLE_TYPE)


def calculate_price(
    distance_km: float,
    duration_min: float,
    vehicle_type: Union[VehicleType, str],
    is_peak_hour: bool = False
) -> FareBreakdown:
    """Compute the fare breakdown; only the total is rounded."""
    if distance_km < 0:
        raise ValidationError("Distance must be non-negative", field="distance_km")
    if duration_min < 0:
        raise ValidationError("Duration must be non-negative", field="duration_min")

    tier = resolve_vehicle_type(vehicle_type)

    base_fare = BASE_FARE_BY_TYPE[tier]
    distance_fare = distance_km * RATE_PER_KM_BY_TYPE[tier]
    time_fare = duration_min * RATE_PER_MINUTE_BY_TYPE[tier]

    fare = base_fare + distance_fare + time_fare
    surge_fare = fare * (PEAK_SURGE_FACTOR - 1) if is_peak_hour else 0

    subtotal = fare + surge_fare
    tax = subtotal * TAX_RATE

    return FareBreakdown(
        base_fare=base_fare,
        distance_fare=distance_fare,
        time_fare=time_fare,
        surge_fare=surge_fare,
        tax=tax,
        total=round(subtotal + tax),
    )


def minimum_bid_price(standard_total: float) -> float:
    """Lowest price a customer may propose for a custom bid delivery."""
    return round(standard_total * MIN_BID_RATIO, 2)


def parse_peak_hours(text: str) -> List[Tuple[int, int]]:
    """Parse ``"8-10,17-20"`` into half-open hour ranges [(8, 10), (17, 20)]."""
    ranges = []
    for chunk in (text or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        start, _, end = chunk.partition("-")
        start_hour, end_hour = int(start), int(end)
        if not (0 <= start_hour < 24 and 0 < end_hour <= 24 and start_hour < end_hour):
            raise ValueError(f"Invalid peak hour range: {chunk!r}")
        ranges.append((start_hour, end_hour))
    return ranges


def is_peak_hour(moment: Optional[datetime] = None, peak_hours: Optional[str] = None) -> bool:
    moment = moment or datetime.now()
    ranges = parse_peak_hours(settings.PEAK_HOURS if peak_hours is None else peak_hours)
    return any(start <= moment.hour < end for start, end in ranges)
