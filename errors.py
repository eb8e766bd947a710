"""Exception hierarchy shared by the matching pipeline and the HTTP layer."""


class RidePoolError(Exception):
    """Base class for every error raised by the ride pool."""


class ValidationError(RidePoolError):
    """Malformed input (coordinates, seat counts, timestamps)."""


class NotFoundError(RidePoolError, LookupError):
    """A ride, request or user id does not exist."""


class InvalidTransition(RidePoolError):
    """A lifecycle operation is not legal from the entity's current status."""


class ConcurrentAssignmentConflict(RidePoolError):
    """The ride or request changed between ranking and assignment.

    Expected under concurrent sweeps; callers retry the next candidate or
    leave the request for the next pass.
    """

    def __init__(self, ride_id, request_id, reason):
        super().__init__(f"cannot assign request {request_id} to ride {ride_id}: {reason}")
        self.ride_id = ride_id
        self.request_id = request_id
        self.reason = reason


class PersistenceError(RidePoolError):
    """Storage failed; the unit of work was rolled back and is safe to retry."""


class StaleTransition(InvalidTransition):
    """The entity's status changed between the read and the guarded write."""
