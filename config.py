"""Runtime configuration read from the environment.

Every knob has a default so the app and the worker start without any setup.
"""
import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class MatchTolerances:
    max_detour_km: float
    max_time_diff_minutes: float
    max_bearing_diff_degrees: float


DEFAULT_TOLERANCES = MatchTolerances(
    max_detour_km=_env_float("RIDEPOOL_MAX_DETOUR_KM", 10.0),
    max_time_diff_minutes=_env_float("RIDEPOOL_MAX_TIME_DIFF_MINUTES", 60.0),
    max_bearing_diff_degrees=_env_float("RIDEPOOL_MAX_BEARING_DIFF_DEGREES", 45.0),
)

SWEEP_INTERVAL_MINUTES = _env_float("RIDEPOOL_SWEEP_INTERVAL_MINUTES", 2.0)
EXPIRATION_INTERVAL_MINUTES = _env_float("RIDEPOOL_EXPIRATION_INTERVAL_MINUTES", 15.0)
EXPIRATION_GRACE_MINUTES = _env_float("RIDEPOOL_EXPIRATION_GRACE_MINUTES", 30.0)

# top candidate plus one retry against the next-ranked ride
ASSIGNMENT_ATTEMPTS = _env_int("RIDEPOOL_ASSIGNMENT_ATTEMPTS", 2)

WORKER_ENABLED = _env_bool("RIDEPOOL_WORKER_ENABLED", True)
DEBUG = _env_bool("RIDEPOOL_DEBUG", False)
LOG_LEVEL = os.environ.get("RIDEPOOL_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
