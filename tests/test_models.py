"""
Storage schema tests: timestamp columns hold naive UTC on the installed
sqlmodel, and seat counts are guarded by CHECK constraints.
"""
from importlib.metadata import version

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

import lifecycle
from conftest import DALLAS, DENTON, T0, reload
from db import get_session
from models import Notification, Ride, RideRequest, utc_now


def _release(text):
    return tuple(int(part) for part in text.split(".")[:3])


def test_installed_sqlmodel_is_in_supported_range():
    assert (0, 0, 14) <= _release(version("sqlmodel")) < (0, 0, 30)


@pytest.mark.parametrize("model, column", [
    (Ride, "scheduled_time"),
    (Ride, "created_at"),
    (Ride, "updated_at"),
    (RideRequest, "scheduled_time"),
    (RideRequest, "created_at"),
    (RideRequest, "updated_at"),
    (Notification, "created_at"),
])
def test_timestamp_columns_are_plain_datetime(model, column):
    col_type = model.__table__.c[column].type
    assert type(col_type) is sa.DateTime
    assert col_type.timezone is False


def test_naive_utc_round_trips(make_user):
    driver = make_user()
    ride = lifecycle.create_ride(driver.id, DENTON, DALLAS, T0)
    stored = reload(Ride, ride.id)
    assert stored.scheduled_time == T0
    assert stored.scheduled_time.tzinfo is None
    assert stored.created_at.tzinfo is None
    assert stored.created_at <= utc_now()


def test_ride_seats_cannot_go_negative(make_ride):
    ride = make_ride()
    assert "ck_ride_seats_available_non_negative" in {c.name for c in Ride.__table__.constraints}
    with get_session() as session:
        with pytest.raises(IntegrityError):
            session.query(Ride).filter(Ride.id == ride.id).update(
                {"seats_available": -1}, synchronize_session=False
            )
        session.rollback()
    assert reload(Ride, ride.id).seats_available == 4


def test_request_needs_at_least_one_seat(make_request):
    with pytest.raises(IntegrityError):
        make_request(seats=0)
