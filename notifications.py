"""Notification sink.

Rows are added to the caller's session so they commit (or roll back) with the
state change that produced them. Delivery is somebody else's problem.
"""
import enum
from typing import List

from db import get_session
from models import Notification, Ride, RideRequest


class NotificationType(str, enum.Enum):
    RIDE_MATCHED = "ride_matched"
    PASSENGER_MATCHED = "passenger_matched"
    RIDE_STARTED = "ride_started"
    RIDE_CANCELLED = "ride_cancelled"
    REQUEST_CANCELLED = "request_cancelled"
    REQUEST_EXPIRED = "request_expired"
    RIDE_EXPIRED = "ride_expired"
    DRIVER_ACCEPTED = "driver_accepted"
    DRIVER_ARRIVED = "driver_arrived"


def notify(session, user_id: int, title: str, message: str, type_: NotificationType,
           ride_id=None, request_id=None) -> Notification:
    note = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type_.value,
        ride_id=ride_id,
        request_id=request_id,
    )
    session.add(note)
    return note


def notify_match(session, ride: Ride, request: RideRequest):
    notify(
        session, ride.driver_id, "New Passenger Matched",
        "A passenger has been matched with your ride.",
        NotificationType.PASSENGER_MATCHED, ride_id=ride.id, request_id=request.id,
    )
    notify(
        session, request.rider_id, "Ride Matched",
        "You've been matched with a driver going your way!",
        NotificationType.RIDE_MATCHED, ride_id=ride.id, request_id=request.id,
    )


def list_notifications(user_id: int, unread_only: bool = False) -> List[Notification]:
    with get_session() as session:
        query = session.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.read == False)  # noqa: E712
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()
