"""Atomic seat reservation and request binding.

The two conditional UPDATEs below are the only place a request gets bound to
a ride. Their WHERE clauses make the storage layer serialize competing
assignments, so no application lock is held across the round-trips.
"""
from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError

from db import get_session
from errors import ConcurrentAssignmentConflict, NotFoundError, PersistenceError
from matching import check_reservation
from models import OPEN_RIDE_STATUSES, RequestStatus, Ride, RideRequest, RideStatus, utc_now
from notifications import notify_match

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    ride_id: int
    request_id: int
    seats_reserved: int
    seats_remaining: int


def assign(ride_id: int, request_id: int) -> Assignment:
    """Reserve seats on a ride and bind a request to it in one transaction.

    Raises ConcurrentAssignmentConflict when the ride filled up or the request
    was matched since it was ranked, and PersistenceError when storage fails.
    Nothing is written in either case.
    """
    with get_session() as session:
        try:
            ride = session.get(Ride, ride_id)
            if ride is None:
                raise NotFoundError(f"ride {ride_id} not found")
            request = session.get(RideRequest, request_id)
            if request is None:
                raise NotFoundError(f"request {request_id} not found")

            rejection = check_reservation(ride, request)
            if rejection is not None:
                raise ConcurrentAssignmentConflict(ride_id, request_id, rejection.value)

            seats = request.seats_needed
            now = utc_now()
            claimed = (
                session.query(RideRequest)
                .filter(RideRequest.id == request_id)
                .filter(RideRequest.status == RequestStatus.PENDING.value)
                .filter(RideRequest.ride_id.is_(None))
                .update(
                    {
                        RideRequest.ride_id: ride_id,
                        RideRequest.status: RequestStatus.ACCEPTED.value,
                        RideRequest.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                session.rollback()
                raise ConcurrentAssignmentConflict(ride_id, request_id, "request already matched")

            reserved = (
                session.query(Ride)
                .filter(Ride.id == ride_id)
                .filter(Ride.status.in_(OPEN_RIDE_STATUSES))
                .filter(Ride.seats_available >= seats)
                .update(
                    {
                        Ride.seats_available: Ride.seats_available - seats,
                        Ride.status: RideStatus.ACCEPTED.value,
                        Ride.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if reserved != 1:
                session.rollback()
                raise ConcurrentAssignmentConflict(ride_id, request_id, "ride has no capacity")

            notify_match(session, ride, request)
            session.commit()
            session.refresh(ride)
            remaining = ride.seats_available
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning(f"Assignment of request {request_id} to ride {ride_id} failed: {exc}")
            raise PersistenceError(f"could not assign request {request_id} to ride {ride_id}") from exc

    logger.info(
        f"Matched request {request_id} to ride {ride_id} "
        f"({seats} seat(s) reserved, {remaining} left)"
    )
    return Assignment(
        ride_id=ride_id,
        request_id=request_id,
        seats_reserved=seats,
        seats_remaining=remaining,
    )
