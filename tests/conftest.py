import os
import sys
from datetime import datetime

import pytest

# ensure project root in sys.path so the flat modules import during collection
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers the tables
from db import get_session
from models import Ride, RideRequest, User

DENTON = (33.2148, -97.1331)
DALLAS = (32.7767, -96.7970)
# ~1.1 km north of DENTON
NEAR_DENTON = (33.2248, -97.1331)
T0 = datetime(2030, 1, 1, 8, 0)


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file."""
    import db as db_mod
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = create_engine(test_db, echo=False, connect_args={"check_same_thread": False})
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield new_engine
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


@pytest.fixture
def make_user():
    def _make(name="Alice"):
        session = get_session()
        u = User(name=name)
        session.add(u)
        session.commit()
        session.refresh(u)
        session.close()
        return u
    return _make


@pytest.fixture
def make_ride(make_user):
    def _make(driver_id=None, pickup=DENTON, dest=DALLAS, when=T0, seats=4, seats_available=None,
              status="pending"):
        if driver_id is None:
            driver_id = make_user("Driver").id
        session = get_session()
        ride = Ride(
            driver_id=driver_id,
            pickup_lat=pickup[0], pickup_lng=pickup[1],
            dest_lat=dest[0], dest_lng=dest[1],
            scheduled_time=when,
            seats_total=seats,
            seats_available=seats if seats_available is None else seats_available,
            status=status,
        )
        session.add(ride)
        session.commit()
        session.refresh(ride)
        session.close()
        return ride
    return _make


@pytest.fixture
def make_request(make_user):
    def _make(rider_id=None, pickup=NEAR_DENTON, dest=DALLAS, when=T0, seats=1, status="pending",
              ride_id=None, auto_match=True, max_wait_minutes=None):
        if rider_id is None:
            rider_id = make_user("Rider").id
        session = get_session()
        rr = RideRequest(
            rider_id=rider_id,
            pickup_lat=pickup[0], pickup_lng=pickup[1],
            dest_lat=dest[0], dest_lng=dest[1],
            scheduled_time=when,
            seats_needed=seats,
            status=status,
            ride_id=ride_id,
            auto_match=auto_match,
            max_wait_minutes=max_wait_minutes,
        )
        session.add(rr)
        session.commit()
        session.refresh(rr)
        session.close()
        return rr
    return _make


def reload(model, entity_id):
    with get_session() as session:
        return session.get(model, entity_id)
