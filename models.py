from typing import Optional, Tuple
from sqlalchemy import CheckConstraint, Column, DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone
import enum


def utc_now() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DRIVER_ACCEPTED = "driver_accepted"
    IN_PROGRESS = "in_progress"
    PICKUP_PENDING = "pickup_pending"
    PICKED_UP = "picked_up"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# rides that can still take passengers
OPEN_RIDE_STATUSES = (RideStatus.PENDING.value, RideStatus.ACCEPTED.value)

# request statuses that hold a seat on a ride
BOUND_REQUEST_STATUSES = (
    RequestStatus.ACCEPTED.value,
    RequestStatus.DRIVER_ACCEPTED.value,
    RequestStatus.IN_PROGRESS.value,
    RequestStatus.PICKUP_PENDING.value,
    RequestStatus.PICKED_UP.value,
    RequestStatus.COMPLETED.value,
)

TERMINAL_REQUEST_STATUSES = (RequestStatus.COMPLETED.value, RequestStatus.CANCELLED.value)
TERMINAL_RIDE_STATUSES = (RideStatus.COMPLETED.value, RideStatus.CANCELLED.value)


def _timestamp(index: bool = False, **kwargs):
    """Plain DateTime column holding naive UTC."""
    return Field(sa_column=Column(DateTime(timezone=False), nullable=False, index=index), **kwargs)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str


class Ride(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("seats_available >= 0", name="ck_ride_seats_available_non_negative"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    driver_id: int = Field(foreign_key="user.id", index=True)
    pickup_lat: float
    pickup_lng: float
    dest_lat: float
    dest_lng: float
    scheduled_time: datetime = _timestamp(index=True)
    seats_total: int = 4
    seats_available: int = 4
    status: str = Field(default=RideStatus.PENDING.value, index=True)
    # opaque data from the routing collaborator
    route_polyline: Optional[str] = None
    estimated_distance_km: Optional[float] = None
    estimated_duration_minutes: Optional[float] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = _timestamp(default_factory=utc_now)
    updated_at: datetime = _timestamp(default_factory=utc_now)

    @property
    def pickup(self) -> Tuple[float, float]:
        return (self.pickup_lat, self.pickup_lng)

    @property
    def destination(self) -> Tuple[float, float]:
        return (self.dest_lat, self.dest_lng)


class RideRequest(SQLModel, table=True):
    __table_args__ = (
        CheckConstraint("seats_needed >= 1", name="ck_riderequest_seats_needed_positive"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    rider_id: int = Field(foreign_key="user.id", index=True)
    pickup_lat: float
    pickup_lng: float
    dest_lat: float
    dest_lng: float
    scheduled_time: datetime = _timestamp(index=True)
    seats_needed: int = 1
    status: str = Field(default=RequestStatus.PENDING.value, index=True)
    ride_id: Optional[int] = Field(default=None, foreign_key="ride.id", index=True)
    auto_match: bool = True
    max_wait_minutes: Optional[int] = None
    max_walking_distance_km: Optional[float] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = _timestamp(index=True, default_factory=utc_now)
    updated_at: datetime = _timestamp(default_factory=utc_now)

    @property
    def pickup(self) -> Tuple[float, float]:
        return (self.pickup_lat, self.pickup_lng)

    @property
    def destination(self) -> Tuple[float, float]:
        return (self.dest_lat, self.dest_lng)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    message: str
    type: str
    ride_id: Optional[int] = None
    request_id: Optional[int] = None
    read: bool = False
    created_at: datetime = _timestamp(default_factory=utc_now)
