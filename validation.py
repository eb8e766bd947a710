from datetime import datetime, timezone
from typing import Optional

from errors import ValidationError
from geometry import Point, validate_coordinate


def parse_timestamp(value) -> datetime:
    """Accept a datetime or ISO-8601 string; return naive UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"invalid timestamp {value!r}")
    else:
        raise ValidationError("scheduled_time is required")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def positive_int(value, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a positive integer")
    if number != value and not isinstance(value, str):
        raise ValidationError(f"{label} must be a whole number")
    if number < 1:
        raise ValidationError(f"{label} must be at least 1")
    return number


def optional_non_negative(value, label: str) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")
    if number < 0:
        raise ValidationError(f"{label} must not be negative")
    return number


def validate_trip(pickup: Point, destination: Point):
    return validate_coordinate(pickup, "pickup"), validate_coordinate(destination, "destination")


def strict_bool(value, label: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{label} must be true or false")
    return value
