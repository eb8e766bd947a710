"""
Tests for the assignment transaction: seat arithmetic, write-once binding,
conflict detection, rollback on storage failure, and behaviour under
concurrent callers.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

import assignment
import db as db_mod
from assignment import assign
from conftest import reload
from db import get_session
from errors import ConcurrentAssignmentConflict, NotFoundError, PersistenceError
from models import Notification, Ride, RideRequest


def notifications_for(user_id):
    with get_session() as session:
        return session.query(Notification).filter(Notification.user_id == user_id).all()


def test_assign_reserves_seats_and_binds(make_ride, make_request):
    ride = make_ride(seats=4)
    rr = make_request(seats=2)
    result = assign(ride.id, rr.id)
    assert result.seats_reserved == 2
    assert result.seats_remaining == 2
    stored_ride = reload(Ride, ride.id)
    stored_req = reload(RideRequest, rr.id)
    assert stored_ride.seats_available == 2
    assert stored_ride.status == "accepted"
    assert stored_req.ride_id == ride.id
    assert stored_req.status == "accepted"


def test_assign_notifies_driver_and_rider(make_ride, make_request):
    ride = make_ride()
    rr = make_request()
    assign(ride.id, rr.id)
    driver_notes = notifications_for(ride.driver_id)
    rider_notes = notifications_for(rr.rider_id)
    assert [n.type for n in driver_notes] == ["passenger_matched"]
    assert [n.type for n in rider_notes] == ["ride_matched"]
    assert rider_notes[0].ride_id == ride.id


def test_assign_to_full_ride_conflicts_without_writes(make_ride, make_request):
    ride = make_ride(seats=1)
    rr = make_request(seats=2)
    with pytest.raises(ConcurrentAssignmentConflict) as info:
        assign(ride.id, rr.id)
    assert info.value.reason == "capacity"
    assert reload(Ride, ride.id).seats_available == 1
    assert reload(RideRequest, rr.id).status == "pending"
    assert notifications_for(rr.rider_id) == []


def test_assign_twice_is_rejected(make_ride, make_request):
    ride = make_ride(seats=4)
    rr = make_request()
    assign(ride.id, rr.id)
    with pytest.raises(ConcurrentAssignmentConflict):
        assign(ride.id, rr.id)
    assert reload(Ride, ride.id).seats_available == 3


def test_binding_is_write_once(make_ride, make_request):
    first = make_ride()
    second = make_ride()
    rr = make_request()
    assign(first.id, rr.id)
    with pytest.raises(ConcurrentAssignmentConflict):
        assign(second.id, rr.id)
    assert reload(RideRequest, rr.id).ride_id == first.id
    assert reload(Ride, second.id).seats_available == 4


def test_assign_to_started_ride_conflicts(make_ride, make_request):
    ride = make_ride(status="in_progress")
    rr = make_request()
    with pytest.raises(ConcurrentAssignmentConflict):
        assign(ride.id, rr.id)


def test_assign_unknown_ids(make_ride, make_request):
    ride = make_ride()
    rr = make_request()
    with pytest.raises(NotFoundError):
        assign(9999, rr.id)
    with pytest.raises(NotFoundError):
        assign(ride.id, 9999)


def test_storage_failure_rolls_back(make_ride, make_request, monkeypatch):
    ride = make_ride(seats=3)
    rr = make_request()

    class FailingSession(Session):
        def commit(self):
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(assignment, "get_session", lambda: FailingSession(db_mod.engine))
    with pytest.raises(PersistenceError):
        assign(ride.id, rr.id)
    assert reload(Ride, ride.id).seats_available == 3
    stored = reload(RideRequest, rr.id)
    assert stored.status == "pending"
    assert stored.ride_id is None
    assert notifications_for(rr.rider_id) == []


def _race(calls):
    """Run callables at the same moment; collect results or exceptions."""
    barrier = threading.Barrier(len(calls))

    def run(fn):
        barrier.wait()
        try:
            return fn()
        except (ConcurrentAssignmentConflict, PersistenceError) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def test_concurrent_assign_same_request_binds_once(make_ride, make_request):
    rides = [make_ride(seats=2) for _ in range(4)]
    rr = make_request()
    outcomes = _race([lambda r=r: assign(r.id, rr.id) for r in rides] * 2)
    successes = [o for o in outcomes if isinstance(o, assignment.Assignment)]
    assert len(successes) == 1
    winner = successes[0].ride_id
    assert reload(RideRequest, rr.id).ride_id == winner
    total_reserved = sum(2 - reload(Ride, r.id).seats_available for r in rides)
    assert total_reserved == 1


def test_concurrent_assign_never_oversells(make_ride, make_request):
    ride = make_ride(seats=3)
    requests = [make_request() for _ in range(6)]
    outcomes = _race([lambda q=q: assign(ride.id, q.id) for q in requests])
    successes = [o for o in outcomes if isinstance(o, assignment.Assignment)]
    assert 1 <= len(successes) <= 3
    stored = reload(Ride, ride.id)
    assert stored.seats_available == 3 - len(successes)
    assert stored.seats_available >= 0
    with get_session() as session:
        bound = session.query(RideRequest).filter(RideRequest.ride_id == ride.id).count()
    assert bound == len(successes)
