"""
Unit tests for the geometry helpers: haversine distance, initial bearing,
bearing difference and coordinate validation.
"""
import math

import pytest

from conftest import DALLAS, DENTON
from errors import ValidationError
from geometry import bearing_degrees, bearing_difference, distance_km, validate_coordinate


def test_distance_zero():
    assert distance_km((40.0, -73.0), (40.0, -73.0)) == 0.0


def test_distance_known_pair():
    # Denton to downtown Dallas is a bit under 60 km as the crow flies
    d = distance_km(DENTON, DALLAS)
    assert 50 < d < 65


def test_distance_is_symmetric():
    assert distance_km(DENTON, DALLAS) == pytest.approx(distance_km(DALLAS, DENTON))


def test_distance_nan_propagates():
    assert math.isnan(distance_km((float("nan"), 0.0), (1.0, 1.0)))


@pytest.mark.parametrize("dest, expected", [
    ((1.0, 0.0), 0.0),
    ((0.0, 1.0), 90.0),
    ((-1.0, 0.0), 180.0),
    ((0.0, -1.0), 270.0),
])
def test_bearing_cardinal_directions(dest, expected):
    assert bearing_degrees((0.0, 0.0), dest) == pytest.approx(expected, abs=1e-9)


def test_bearing_denton_to_dallas_is_south_east():
    b = bearing_degrees(DENTON, DALLAS)
    assert 90 < b < 180


def test_bearing_is_normalized():
    for dest in [(-0.5, -0.5), (0.5, -0.5), (-1.0, -0.001)]:
        b = bearing_degrees((0.0, 0.0), dest)
        assert 0.0 <= b < 360.0


def test_bearing_difference_wraps_around_north():
    assert bearing_difference(350.0, 10.0) == pytest.approx(20.0)
    assert bearing_difference(10.0, 350.0) == pytest.approx(20.0)


def test_bearing_difference_opposite():
    assert bearing_difference(90.0, 270.0) == pytest.approx(180.0)


def test_bearing_difference_symmetric_and_bounded():
    values = [0.0, 0.5, 45.0, 89.9, 179.0, 180.0, 181.0, 270.0, 359.9]
    for b1 in values:
        for b2 in values:
            d = bearing_difference(b1, b2)
            assert 0.0 <= d <= 180.0
            assert d == pytest.approx(bearing_difference(b2, b1))


def test_validate_coordinate_accepts_valid_pair():
    assert validate_coordinate(["33.2", "-97.1"]) == (33.2, -97.1)


@pytest.mark.parametrize("point", [
    (91.0, 0.0),
    (-90.5, 0.0),
    (0.0, 180.5),
    (0.0, -181.0),
    (float("nan"), 0.0),
    ("north", 0.0),
    (1.0,),
    None,
])
def test_validate_coordinate_rejects_malformed(point):
    with pytest.raises(ValidationError):
        validate_coordinate(point)
