"""Ride and request lifecycle.

Every transition checks the table below, then writes with a compare-and-swap
on the status it read, so two racing callers cannot both win.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from db import get_session
from errors import InvalidTransition, NotFoundError, PersistenceError, StaleTransition, ValidationError
from geometry import validate_coordinate
from models import (
    BOUND_REQUEST_STATUSES,
    OPEN_RIDE_STATUSES,
    TERMINAL_REQUEST_STATUSES,
    TERMINAL_RIDE_STATUSES,
    RequestStatus,
    Ride,
    RideRequest,
    RideStatus,
    User,
    utc_now,
)
from notifications import NotificationType, notify
from validation import optional_non_negative, parse_timestamp, positive_int, strict_bool, validate_trip

logger = logging.getLogger(__name__)

RIDE_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    RideStatus.PENDING.value: (RideStatus.ACCEPTED.value, RideStatus.IN_PROGRESS.value, RideStatus.CANCELLED.value),
    RideStatus.ACCEPTED.value: (RideStatus.IN_PROGRESS.value, RideStatus.CANCELLED.value),
    RideStatus.IN_PROGRESS.value: (RideStatus.COMPLETED.value,),
    RideStatus.COMPLETED.value: (),
    RideStatus.CANCELLED.value: (),
}

REQUEST_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    RequestStatus.PENDING.value: (RequestStatus.ACCEPTED.value, RequestStatus.CANCELLED.value),
    RequestStatus.ACCEPTED.value: (
        RequestStatus.DRIVER_ACCEPTED.value,
        RequestStatus.IN_PROGRESS.value,
        RequestStatus.CANCELLED.value,
    ),
    RequestStatus.DRIVER_ACCEPTED.value: (RequestStatus.IN_PROGRESS.value, RequestStatus.CANCELLED.value),
    RequestStatus.IN_PROGRESS.value: (RequestStatus.PICKUP_PENDING.value, RequestStatus.PICKED_UP.value),
    RequestStatus.PICKUP_PENDING.value: (RequestStatus.PICKED_UP.value,),
    RequestStatus.PICKED_UP.value: (RequestStatus.COMPLETED.value,),
    RequestStatus.COMPLETED.value: (),
    RequestStatus.CANCELLED.value: (),
}

# requests that ride along when their ride starts
_STARTABLE_REQUEST_STATUSES = (RequestStatus.ACCEPTED.value, RequestStatus.DRIVER_ACCEPTED.value)

ACTIVE_REQUEST_STATUSES = (
    RequestStatus.ACCEPTED.value,
    RequestStatus.DRIVER_ACCEPTED.value,
    RequestStatus.IN_PROGRESS.value,
    RequestStatus.PICKUP_PENDING.value,
    RequestStatus.PICKED_UP.value,
)


def can_transition(table: Dict[str, Tuple[str, ...]], current: str, target: str) -> bool:
    return target in table.get(current, ())


def ensure_transition(table, kind: str, entity_id: int, current: str, target: str):
    if not can_transition(table, current, target):
        raise InvalidTransition(f"{kind} {entity_id} cannot go from {current} to {target}")


@contextmanager
def unit_of_work():
    """Session whose storage failures surface as PersistenceError after rollback."""
    with get_session() as session:
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning(f"Lifecycle write failed: {exc}")
            raise PersistenceError(str(exc)) from exc


def _load_ride(session, ride_id: int) -> Ride:
    ride = session.get(Ride, ride_id)
    if ride is None:
        raise NotFoundError(f"ride {ride_id} not found")
    return ride


def _load_request(session, request_id: int) -> RideRequest:
    request = session.get(RideRequest, request_id)
    if request is None:
        raise NotFoundError(f"request {request_id} not found")
    return request


def _swap_ride(session, ride: Ride, target: RideStatus, **values):
    ensure_transition(RIDE_TRANSITIONS, "ride", ride.id, ride.status, target.value)
    values.update(status=target.value, updated_at=utc_now())
    updated = (
        session.query(Ride)
        .filter(Ride.id == ride.id, Ride.status == ride.status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise StaleTransition(f"ride {ride.id} changed while moving to {target.value}")


def _swap_request(session, request: RideRequest, target: RequestStatus, **values):
    ensure_transition(REQUEST_TRANSITIONS, "request", request.id, request.status, target.value)
    values.update(status=target.value, updated_at=utc_now())
    updated = (
        session.query(RideRequest)
        .filter(RideRequest.id == request.id, RideRequest.status == request.status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise StaleTransition(f"request {request.id} changed while moving to {target.value}")


def _finish(session, entity):
    session.commit()
    session.refresh(entity)
    return entity


# ───────────────────────── creation ─────────────────────────


def create_user(name: str) -> User:
    if not name or not str(name).strip():
        raise ValidationError("name is required")
    with unit_of_work() as session:
        user = User(name=str(name).strip())
        session.add(user)
        return _finish(session, user)


def create_ride(driver_id: int, pickup, destination, scheduled_time, seats=4,
                route_polyline: Optional[str] = None,
                estimated_distance_km=None, estimated_duration_minutes=None) -> Ride:
    pickup, destination = validate_trip(pickup, destination)
    seats = positive_int(seats, "seats")
    when = parse_timestamp(scheduled_time)
    with unit_of_work() as session:
        if session.get(User, driver_id) is None:
            raise NotFoundError(f"user {driver_id} not found")
        ride = Ride(
            driver_id=driver_id,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            dest_lat=destination[0],
            dest_lng=destination[1],
            scheduled_time=when,
            seats_total=seats,
            seats_available=seats,
            route_polyline=route_polyline,
            estimated_distance_km=optional_non_negative(estimated_distance_km, "estimated_distance_km"),
            estimated_duration_minutes=optional_non_negative(estimated_duration_minutes, "estimated_duration_minutes"),
        )
        session.add(ride)
        ride = _finish(session, ride)
    logger.info(f"Ride {ride.id} offered by driver {driver_id} with {seats} seat(s)")
    return ride


def create_request(rider_id: int, pickup, destination, scheduled_time, seats_needed=1,
                   auto_match: bool = True, max_wait_minutes=None,
                   max_walking_distance_km=None) -> RideRequest:
    pickup, destination = validate_trip(pickup, destination)
    seats_needed = positive_int(seats_needed, "seats_needed")
    when = parse_timestamp(scheduled_time)
    if max_wait_minutes is not None:
        max_wait_minutes = positive_int(max_wait_minutes, "max_wait_minutes")
    walking = optional_non_negative(max_walking_distance_km, "max_walking_distance_km")
    auto_match = strict_bool(auto_match, "auto_match")
    with unit_of_work() as session:
        if session.get(User, rider_id) is None:
            raise NotFoundError(f"user {rider_id} not found")
        request = RideRequest(
            rider_id=rider_id,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            dest_lat=destination[0],
            dest_lng=destination[1],
            scheduled_time=when,
            seats_needed=seats_needed,
            auto_match=auto_match,
            max_wait_minutes=max_wait_minutes,
            max_walking_distance_km=walking,
        )
        session.add(request)
        request = _finish(session, request)
    logger.info(f"Request {request.id} posted by rider {rider_id} for {seats_needed} seat(s)")
    return request


# ───────────────────────── ride transitions ─────────────────────────


def start_ride(ride_id: int) -> Ride:
    """Driver starts the trip; matched passengers move to in_progress with it.

    A ride with no passengers yet may start too.
    """
    with unit_of_work() as session:
        ride = _load_ride(session, ride_id)
        _swap_ride(session, ride, RideStatus.IN_PROGRESS)
        riding = (
            session.query(RideRequest)
            .filter(RideRequest.ride_id == ride_id)
            .filter(RideRequest.status.in_(_STARTABLE_REQUEST_STATUSES))
            .all()
        )
        for request in riding:
            _swap_request(session, request, RequestStatus.IN_PROGRESS)
            notify(
                session, request.rider_id, "Ride Started",
                "Your driver is on the way to the pickup point.",
                NotificationType.RIDE_STARTED, ride_id=ride_id, request_id=request.id,
            )
        ride = _finish(session, ride)
    logger.info(f"Ride {ride_id} started with {len(riding)} passenger request(s)")
    return ride


def complete_ride(ride_id: int) -> Ride:
    with unit_of_work() as session:
        ride = _load_ride(session, ride_id)
        ensure_transition(RIDE_TRANSITIONS, "ride", ride.id, ride.status, RideStatus.COMPLETED.value)
        unfinished = (
            session.query(RideRequest)
            .filter(RideRequest.ride_id == ride_id)
            .filter(RideRequest.status.not_in(TERMINAL_REQUEST_STATUSES))
            .count()
        )
        if unfinished:
            raise InvalidTransition(f"ride {ride_id} still has {unfinished} passenger(s) on board or waiting")
        _swap_ride(session, ride, RideStatus.COMPLETED)
        ride = _finish(session, ride)
    logger.info(f"Ride {ride_id} completed")
    return ride


def cancel_ride(ride_id: int, reason: str = "Cancelled by driver") -> Ride:
    """Cancel an unstarted ride; its matched requests are cancelled and unbound."""
    with unit_of_work() as session:
        ride = _load_ride(session, ride_id)
        _swap_ride(session, ride, RideStatus.CANCELLED, cancel_reason=reason)
        stranded = (
            session.query(RideRequest)
            .filter(RideRequest.ride_id == ride_id)
            .filter(RideRequest.status.in_(_STARTABLE_REQUEST_STATUSES))
            .all()
        )
        for request in stranded:
            _swap_request(session, request, RequestStatus.CANCELLED, ride_id=None, cancel_reason="ride cancelled")
            notify(
                session, request.rider_id, "Ride Cancelled",
                "The driver cancelled this ride.",
                NotificationType.RIDE_CANCELLED, ride_id=ride_id, request_id=request.id,
            )
        ride = _finish(session, ride)
    logger.info(f"Ride {ride_id} cancelled ({reason}); {len(stranded)} request(s) released")
    return ride


def update_ride_location(ride_id: int, lat, lng) -> Ride:
    lat, lng = validate_coordinate((lat, lng), "location")
    with unit_of_work() as session:
        ride = _load_ride(session, ride_id)
        if not RIDE_TRANSITIONS.get(ride.status):
            raise InvalidTransition(f"ride {ride_id} is {ride.status}")
        ride.current_lat = lat
        ride.current_lng = lng
        ride.updated_at = utc_now()
        session.add(ride)
        return _finish(session, ride)


# ───────────────────────── request transitions ─────────────────────────


def _cancel_request_once(request_id: int, reason: str) -> RideRequest:
    with unit_of_work() as session:
        request = _load_request(session, request_id)
        ride_id = request.ride_id
        _swap_request(session, request, RequestStatus.CANCELLED, ride_id=None, cancel_reason=reason)
        if ride_id is not None:
            released = (
                session.query(Ride)
                .filter(Ride.id == ride_id)
                .filter(Ride.status.in_(OPEN_RIDE_STATUSES))
                .filter(Ride.seats_available + request.seats_needed <= Ride.seats_total)
                .update(
                    {
                        Ride.seats_available: Ride.seats_available + request.seats_needed,
                        Ride.updated_at: utc_now(),
                    },
                    synchronize_session=False,
                )
            )
            ride = session.get(Ride, ride_id)
            if released and ride is not None:
                notify(
                    session, ride.driver_id, "Passenger Cancelled",
                    "A matched passenger cancelled their request.",
                    NotificationType.REQUEST_CANCELLED, ride_id=ride_id, request_id=request_id,
                )
        return _finish(session, request)


def cancel_request(request_id: int, reason: str = "Cancelled by user") -> RideRequest:
    """Cancel a request that has not started; a matched one gives its seats back.

    A sweep may bind the request between the read and the guarded write. The
    cancel is then re-read and tried once more from the new status.
    """
    try:
        request = _cancel_request_once(request_id, reason)
    except StaleTransition as exc:
        logger.info(f"{exc}; re-reading and retrying the cancel")
        request = _cancel_request_once(request_id, reason)
    logger.info(f"Request {request_id} cancelled ({reason})")
    return request


def driver_accept_request(request_id: int) -> RideRequest:
    with unit_of_work() as session:
        request = _load_request(session, request_id)
        _swap_request(session, request, RequestStatus.DRIVER_ACCEPTED)
        notify(
            session, request.rider_id, "Driver Confirmed",
            "Your driver confirmed the pickup.",
            NotificationType.DRIVER_ACCEPTED, ride_id=request.ride_id, request_id=request_id,
        )
        return _finish(session, request)


def mark_driver_arrived(request_id: int) -> RideRequest:
    with unit_of_work() as session:
        request = _load_request(session, request_id)
        _swap_request(session, request, RequestStatus.PICKUP_PENDING)
        notify(
            session, request.rider_id, "Driver Arrived",
            "Your driver is at the pickup point.",
            NotificationType.DRIVER_ARRIVED, ride_id=request.ride_id, request_id=request_id,
        )
        return _finish(session, request)


def confirm_pickup(request_id: int) -> RideRequest:
    with unit_of_work() as session:
        request = _load_request(session, request_id)
        _swap_request(session, request, RequestStatus.PICKED_UP)
        return _finish(session, request)


def confirm_dropoff(request_id: int) -> RideRequest:
    with unit_of_work() as session:
        request = _load_request(session, request_id)
        _swap_request(session, request, RequestStatus.COMPLETED)
        return _finish(session, request)


# ───────────────────────── reads ─────────────────────────


def get_ride(ride_id: int) -> Ride:
    with get_session() as session:
        return _load_ride(session, ride_id)


def get_request(request_id: int) -> RideRequest:
    with get_session() as session:
        return _load_request(session, request_id)


def pending_requests() -> List[RideRequest]:
    with get_session() as session:
        return (
            session.query(RideRequest)
            .filter(RideRequest.status == RequestStatus.PENDING.value)
            .order_by(RideRequest.created_at, RideRequest.id)
            .all()
        )


def ride_passengers(ride_id: int) -> List[RideRequest]:
    with get_session() as session:
        _load_ride(session, ride_id)
        return (
            session.query(RideRequest)
            .filter(RideRequest.ride_id == ride_id)
            .filter(RideRequest.status.in_(BOUND_REQUEST_STATUSES))
            .order_by(RideRequest.id)
            .all()
        )


def current_ride_for_rider(rider_id: int) -> Optional[Tuple[RideRequest, Ride]]:
    """The rider's latest matched, unfinished request and its ride."""
    with get_session() as session:
        request = (
            session.query(RideRequest)
            .filter(RideRequest.rider_id == rider_id)
            .filter(RideRequest.status.in_(ACTIVE_REQUEST_STATUSES))
            .filter(RideRequest.ride_id.is_not(None))
            .order_by(RideRequest.created_at.desc(), RideRequest.id.desc())
            .first()
        )
        if request is None:
            return None
        return request, session.get(Ride, request.ride_id)


def upcoming_rides(driver_id: int, now=None) -> List[Ride]:
    """A driver's rides that can still take passengers and have not departed, soonest first."""
    now = now or utc_now()
    with get_session() as session:
        if session.get(User, driver_id) is None:
            raise NotFoundError(f"user {driver_id} not found")
        return (
            session.query(Ride)
            .filter(Ride.driver_id == driver_id)
            .filter(Ride.status.in_(OPEN_RIDE_STATUSES))
            .filter(Ride.scheduled_time >= now)
            .order_by(Ride.scheduled_time, Ride.id)
            .all()
        )


@dataclass
class RideHistory:
    rides: List[Ride]
    requests: List[RideRequest]


def ride_history(user_id: int) -> RideHistory:
    """Finished rides the user drove and finished requests the user rode, newest first."""
    with get_session() as session:
        if session.get(User, user_id) is None:
            raise NotFoundError(f"user {user_id} not found")
        rides = (
            session.query(Ride)
            .filter(Ride.driver_id == user_id)
            .filter(Ride.status.in_(TERMINAL_RIDE_STATUSES))
            .order_by(Ride.scheduled_time.desc(), Ride.id.desc())
            .all()
        )
        requests = (
            session.query(RideRequest)
            .filter(RideRequest.rider_id == user_id)
            .filter(RideRequest.status.in_(TERMINAL_REQUEST_STATUSES))
            .order_by(RideRequest.scheduled_time.desc(), RideRequest.id.desc())
            .all()
        )
    return RideHistory(rides=rides, requests=requests)
