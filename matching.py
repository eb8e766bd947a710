from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional
import enum
import logging

from config import DEFAULT_TOLERANCES, MatchTolerances
from db import get_session
from errors import NotFoundError
from geometry import bearing_degrees, bearing_difference, distance_km
from models import OPEN_RIDE_STATUSES, RequestStatus, Ride, RideRequest

logger = logging.getLogger(__name__)

# combined pickup + dropoff gap below this is malformed data, not a shared route
DEGENERATE_DETOUR_KM = 0.01

DIRECTION_WEIGHT = 0.6
DISTANCE_WEIGHT = 0.2
TIME_WEIGHT = 0.2


class MatchRejection(str, enum.Enum):
    CAPACITY = "capacity"
    ELIGIBILITY = "eligibility"
    TEMPORAL = "temporal"
    DIRECTIONAL = "directional"
    DETOUR = "detour"
    DEGENERATE = "degenerate"


@dataclass
class MatchMetrics:
    """Diagnostic breakdown; fields stay None for gates that never ran."""
    time_diff_minutes: Optional[float] = None
    bearing_diff_degrees: Optional[float] = None
    pickup_gap_km: Optional[float] = None
    dropoff_gap_km: Optional[float] = None
    detour_km: Optional[float] = None
    direction_component: Optional[float] = None
    distance_component: Optional[float] = None
    time_component: Optional[float] = None


@dataclass
class MatchVerdict:
    is_match: bool
    reason: Optional[MatchRejection] = None
    score: float = 0.0
    metrics: MatchMetrics = field(default_factory=MatchMetrics)


@dataclass
class MatchCandidate:
    ride: Ride
    request: RideRequest
    score: float
    metrics: MatchMetrics


def check_reservation(ride: Ride, request: RideRequest) -> Optional[MatchRejection]:
    """Capacity and eligibility gates; also re-run inside the assignment transaction."""
    if ride.seats_available < request.seats_needed:
        return MatchRejection.CAPACITY
    if ride.status not in OPEN_RIDE_STATUSES:
        return MatchRejection.ELIGIBILITY
    if request.status != RequestStatus.PENDING or request.ride_id is not None:
        return MatchRejection.ELIGIBILITY
    return None


def effective_time_tolerance(request: RideRequest, tolerances: MatchTolerances) -> float:
    if request.max_wait_minutes is not None:
        return min(tolerances.max_time_diff_minutes, float(request.max_wait_minutes))
    return tolerances.max_time_diff_minutes


def _component(value: float, limit: float) -> float:
    if limit <= 0:
        return 1.0 if value <= 0 else 0.0
    return max(0.0, 1.0 - min(1.0, value / limit))


def evaluate_match(ride: Ride, request: RideRequest,
                   tolerances: Optional[MatchTolerances] = None) -> MatchVerdict:
    """Run the compatibility gates in order and stop at the first failure.

    Gates: capacity, eligibility, temporal, directional, detour. A passing
    pair gets a score in [0, 1] weighted 0.6 direction, 0.2 detour distance,
    0.2 time difference.
    """
    tolerances = tolerances or DEFAULT_TOLERANCES
    metrics = MatchMetrics()

    rejection = check_reservation(ride, request)
    if rejection is not None:
        return MatchVerdict(is_match=False, reason=rejection, metrics=metrics)

    max_minutes = effective_time_tolerance(request, tolerances)
    time_diff = abs((ride.scheduled_time - request.scheduled_time).total_seconds()) / 60.0
    metrics.time_diff_minutes = time_diff
    if time_diff > max_minutes:
        return MatchVerdict(is_match=False, reason=MatchRejection.TEMPORAL, metrics=metrics)

    ride_bearing = bearing_degrees(ride.pickup, ride.destination)
    request_bearing = bearing_degrees(request.pickup, request.destination)
    bearing_diff = bearing_difference(ride_bearing, request_bearing)
    metrics.bearing_diff_degrees = bearing_diff
    if bearing_diff > tolerances.max_bearing_diff_degrees:
        return MatchVerdict(is_match=False, reason=MatchRejection.DIRECTIONAL, metrics=metrics)

    pickup_gap = distance_km(ride.pickup, request.pickup)
    dropoff_gap = distance_km(ride.destination, request.destination)
    detour = pickup_gap + dropoff_gap
    metrics.pickup_gap_km = pickup_gap
    metrics.dropoff_gap_km = dropoff_gap
    metrics.detour_km = detour
    if detour > tolerances.max_detour_km:
        return MatchVerdict(is_match=False, reason=MatchRejection.DETOUR, metrics=metrics)
    if detour <= DEGENERATE_DETOUR_KM:
        return MatchVerdict(is_match=False, reason=MatchRejection.DEGENERATE, metrics=metrics)

    metrics.direction_component = _component(bearing_diff, tolerances.max_bearing_diff_degrees)
    metrics.distance_component = _component(detour, tolerances.max_detour_km)
    metrics.time_component = _component(time_diff, max_minutes)
    score = (
        DIRECTION_WEIGHT * metrics.direction_component
        + DISTANCE_WEIGHT * metrics.distance_component
        + TIME_WEIGHT * metrics.time_component
    )
    return MatchVerdict(is_match=True, score=score, metrics=metrics)


def _candidate_order(candidate: MatchCandidate):
    return (-candidate.score, candidate.ride.scheduled_time, candidate.ride.id)


def rank_candidates(request: RideRequest, rides: Iterable[Ride],
                    tolerances: Optional[MatchTolerances] = None) -> List[MatchCandidate]:
    """Evaluate every ride against one request; best score first.

    Ties go to the earliest scheduled ride, then the lowest ride id.
    """
    candidates = []
    for ride in rides:
        verdict = evaluate_match(ride, request, tolerances)
        if not verdict.is_match:
            logger.debug(f"Ride {ride.id} rejected for request {request.id}: {verdict.reason.value}")
            continue
        candidates.append(MatchCandidate(ride=ride, request=request, score=verdict.score, metrics=verdict.metrics))
    candidates.sort(key=_candidate_order)
    return candidates


def rank_requests(ride: Ride, requests: Iterable[RideRequest],
                  tolerances: Optional[MatchTolerances] = None) -> List[MatchCandidate]:
    """Same as rank_candidates but from the driver's side: many requests, one ride."""
    candidates = []
    for request in requests:
        verdict = evaluate_match(ride, request, tolerances)
        if verdict.is_match:
            candidates.append(MatchCandidate(ride=ride, request=request, score=verdict.score, metrics=verdict.metrics))
    candidates.sort(key=lambda c: (-c.score, c.request.created_at, c.request.id))
    return candidates


def find_candidates(request_id: int, tolerances: Optional[MatchTolerances] = None) -> List[MatchCandidate]:
    """Rank the rides that could take a request.

    Storage applies the cheap filters (status, seats, time window) and the
    evaluator does the rest. A request that is no longer pending has no
    candidates.
    """
    tolerances = tolerances or DEFAULT_TOLERANCES
    with get_session() as session:
        request = session.get(RideRequest, request_id)
        if request is None:
            raise NotFoundError(f"request {request_id} not found")
        if request.status != RequestStatus.PENDING or request.ride_id is not None:
            return []
        window = timedelta(minutes=effective_time_tolerance(request, tolerances))
        pool = (
            session.query(Ride)
            .filter(Ride.status.in_(OPEN_RIDE_STATUSES))
            .filter(Ride.seats_available >= request.seats_needed)
            .filter(Ride.scheduled_time >= request.scheduled_time - window)
            .filter(Ride.scheduled_time <= request.scheduled_time + window)
            .all()
        )
    candidates = rank_candidates(request, pool, tolerances)
    logger.info(f"Request {request_id}: {len(candidates)} of {len(pool)} rides are compatible")
    return candidates


def find_passengers(ride_id: int, tolerances: Optional[MatchTolerances] = None) -> List[MatchCandidate]:
    """Rank pending auto-match requests for a ride, for when a driver posts a new offer."""
    tolerances = tolerances or DEFAULT_TOLERANCES
    with get_session() as session:
        ride = session.get(Ride, ride_id)
        if ride is None:
            raise NotFoundError(f"ride {ride_id} not found")
        if ride.status not in OPEN_RIDE_STATUSES or ride.seats_available < 1:
            return []
        window = timedelta(minutes=tolerances.max_time_diff_minutes)
        pool = (
            session.query(RideRequest)
            .filter(RideRequest.status == RequestStatus.PENDING.value)
            .filter(RideRequest.ride_id.is_(None))
            .filter(RideRequest.auto_match == True)  # noqa: E712
            .filter(RideRequest.seats_needed <= ride.seats_available)
            .filter(RideRequest.scheduled_time >= ride.scheduled_time - window)
            .filter(RideRequest.scheduled_time <= ride.scheduled_time + window)
            .all()
        )
    candidates = rank_requests(ride, pool, tolerances)
    logger.info(f"Ride {ride_id}: {len(candidates)} of {len(pool)} pending requests are compatible")
    return candidates
