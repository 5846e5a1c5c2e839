"""
Distance and travel time between two coordinates.

The maps provider is an external collaborator. ``StraightLineEstimator`` is
the built-in fallback: great-circle distance plus an average-speed duration.
"""
import math
import logging
from dataclasses import dataclass
from typing import Sequence

from core.config import settings
from core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(longitude1: float, latitude1: float, longitude2: float, latitude2: float) -> float:
    """Great-circle distance in kilometers between two [longitude, latitude] points."""
    lon1, lat1, lon2, lat2 = map(math.radians, [longitude1, latitude1, longitude2, latitude2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def bounding_box(longitude: float, latitude: float, radius_km: float):
    """Return (min_lon, max_lon, min_lat, max_lat) enclosing a circle of radius_km."""
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = max(math.cos(math.radians(latitude)), 1e-6)
    lon_delta = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    return longitude - lon_delta, longitude + lon_delta, latitude - lat_delta, latitude + lat_delta


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    duration_min: float


class DistanceProvider:
    """Interface for anything that can estimate a route between two points."""

    name = "distance-provider"

    def estimate(self, origin: Sequence[float], destination: Sequence[float]) -> RouteEstimate:
        raise NotImplementedError


class StraightLineEstimator(DistanceProvider):
    name = "straight-line"

    def __init__(self, average_speed_kmh: float = None):
        self.average_speed_kmh = average_speed_kmh or settings.AVERAGE_SPEED_KMH

    def estimate(self, origin: Sequence[float], destination: Sequence[float]) -> RouteEstimate:
        distance = haversine_km(origin[0], origin[1], destination[0], destination[1])
        duration = (distance / self.average_speed_kmh) * 60 if self.average_speed_kmh > 0 else 0.0
        return RouteEstimate(distance_km=round(distance, 2), duration_min=round(duration, 1))


def estimate_route(provider: DistanceProvider, origin: Sequence[float], destination: Sequence[float]) -> RouteEstimate:
    """Call the provider, turning any failure into ExternalServiceError before state is touched."""
    try:
        estimate = provider.estimate(origin, destination)
    except ExternalServiceError:
        raise
    except Exception as e:
        logger.error(f"Route estimate failed with {provider.name}: {str(e)}")
        raise ExternalServiceError(provider.name, str(e))

    if estimate.distance_km < 0 or estimate.duration_min < 0:
        raise ExternalServiceError(provider.name, "negative distance or duration returned")
    return estimate


default_distance_provider = StraightLineEstimator()
