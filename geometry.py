from math import atan2, cos, degrees, isfinite, radians, sin, sqrt
from typing import Tuple

from errors import ValidationError

Point = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Point, b: Point) -> float:
    """Great-circle distance between two (lat, lng) pairs using haversine."""
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return EARTH_RADIUS_KM * c


def bearing_degrees(a: Point, b: Point) -> float:
    """Initial compass bearing from a to b in [0, 360)."""
    lat1, lon1 = radians(a[0]), radians(a[1])
    lat2, lon2 = radians(b[0]), radians(b[1])
    dlon = lon2 - lon1
    y = sin(dlon) * cos(lat2)
    x = cos(lat1) * sin(lat2) - sin(lat1) * cos(lat2) * cos(dlon)
    return (degrees(atan2(y, x)) + 360.0) % 360.0


def bearing_difference(b1: float, b2: float) -> float:
    diff = b1 - b2
    return min(abs(diff), abs(diff + 360.0), abs(diff - 360.0))


def validate_coordinate(point: Point, label: str = "coordinate") -> Point:
    try:
        lat, lng = float(point[0]), float(point[1])
    except (TypeError, ValueError, IndexError):
        raise ValidationError(f"{label} must be a (lat, lng) pair")
    if not (isfinite(lat) and isfinite(lng)):
        raise ValidationError(f"{label} must be finite")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"{label} latitude {lat} outside [-90, 90]")
    if not -180.0 <= lng <= 180.0:
        raise ValidationError(f"{label} longitude {lng} outside [-180, 180]")
    return lat, lng
