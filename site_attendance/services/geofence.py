"""
Geofence validation service.
Uses Haversine formula to calculate distance between points and decides
whether a reported position is inside a project's circular boundary.
"""
import math
from dataclasses import dataclass, asdict
from typing import Optional

from ..config import settings


EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90 <= self.latitude <= 90:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class Geofence:
    center: GeoPoint
    radius_meters: float
    strict_mode: bool = True
    allowed_variance_meters: float = 0.0

    def __post_init__(self):
        if self.radius_meters <= 0:
            raise ValueError(f"radius must be positive: {self.radius_meters}")


@dataclass(frozen=True)
class GeofenceValidation:
    inside_geofence: bool
    distance: float
    is_valid: bool
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def effective_radius(fence: Geofence) -> float:
    """Allowed distance from the center: lenient fences add their variance."""
    if fence.strict_mode:
        return fence.radius_meters
    return fence.radius_meters + fence.allowed_variance_meters


def validate_geofence(
    location: GeoPoint,
    fence: Geofence,
    accuracy_m: Optional[float] = None,
    accuracy_threshold_m: Optional[float] = None,
) -> GeofenceValidation:
    """
    Validate a reported position against a project geofence.

    Args:
        location: Reported position
        fence: Project geofence
        accuracy_m: Reported GPS accuracy in meters; zero/negative means unknown
        accuracy_threshold_m: Strict-mode confidence threshold (default from settings)

    Returns:
        GeofenceValidation. ``inside_geofence`` always compares against the
        nominal radius (boundary inclusive); ``is_valid`` additionally applies
        the lenient variance and the strict-mode accuracy requirement.
    """
    if accuracy_threshold_m is None:
        accuracy_threshold_m = settings.gps_accuracy_risk_m

    distance = distance_between(location, fence.center)
    inside = distance <= fence.radius_meters
    allowed = effective_radius(fence)
    within_allowed = distance <= allowed

    known_accuracy = accuracy_m is not None and accuracy_m > 0
    if fence.strict_mode and known_accuracy and accuracy_m > accuracy_threshold_m:
        return GeofenceValidation(
            inside_geofence=inside,
            distance=distance,
            is_valid=False,
            message=(
                f"GPS accuracy too low ({round(accuracy_m)}m, required {round(accuracy_threshold_m)}m or better). "
                "Move to an open area and try again"
            ),
        )

    if inside:
        message = f"Inside project geofence ({round(distance)}m from center)"
    elif within_allowed:
        message = f"Within allowed variance of project geofence ({round(distance - fence.radius_meters)}m outside boundary)"
    else:
        message = f"Outside project geofence by {round(distance - allowed)}m"

    return GeofenceValidation(
        inside_geofence=inside,
        distance=distance,
        is_valid=within_allowed,
        message=message,
    )
