from contextlib import asynccontextmanager
import logging

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse
from starlette.requests import Request
from starlette.routing import Route

import config
import lifecycle
from assignment import assign
from db import init_db
from errors import (
    ConcurrentAssignmentConflict,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from matching import find_candidates
from notifications import list_notifications
from worker import MatchingWorker, expire_stale, run_sweep

logging.basicConfig(format=config.LOG_FORMAT, level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value is not None else None


def ride_json(ride):
    return {
        "id": ride.id,
        "driver_id": ride.driver_id,
        "pickup": [ride.pickup_lat, ride.pickup_lng],
        "destination": [ride.dest_lat, ride.dest_lng],
        "scheduled_time": _iso(ride.scheduled_time),
        "seats_total": ride.seats_total,
        "seats_available": ride.seats_available,
        "status": ride.status,
        "route_polyline": ride.route_polyline,
        "estimated_distance_km": ride.estimated_distance_km,
        "estimated_duration_minutes": ride.estimated_duration_minutes,
        "current_location": (
            [ride.current_lat, ride.current_lng] if ride.current_lat is not None else None
        ),
        "cancel_reason": ride.cancel_reason,
    }


def request_json(rr):
    return {
        "id": rr.id,
        "rider_id": rr.rider_id,
        "pickup": [rr.pickup_lat, rr.pickup_lng],
        "destination": [rr.dest_lat, rr.dest_lng],
        "scheduled_time": _iso(rr.scheduled_time),
        "seats_needed": rr.seats_needed,
        "status": rr.status,
        "ride_id": rr.ride_id,
        "auto_match": rr.auto_match,
        "max_wait_minutes": rr.max_wait_minutes,
        "max_walking_distance_km": rr.max_walking_distance_km,
        "cancel_reason": rr.cancel_reason,
    }


def candidate_json(candidate):
    m = candidate.metrics
    return {
        "ride_id": candidate.ride.id,
        "request_id": candidate.request.id,
        "score": round(candidate.score, 4),
        "time_diff_minutes": m.time_diff_minutes,
        "bearing_diff_degrees": m.bearing_diff_degrees,
        "pickup_gap_km": m.pickup_gap_km,
        "dropoff_gap_km": m.dropoff_gap_km,
        "detour_km": m.detour_km,
    }


def _worker(request: Request):
    return getattr(request.app.state, "worker", None)


async def _json_body(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("body must be a JSON object")
    return payload


def _require(payload, *keys):
    for k in keys:
        if k not in payload:
            raise ValidationError(f"missing {k}")


def _int_field(payload, key) -> int:
    try:
        return int(payload[key])
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _path_id(request: Request, name: str) -> int:
    try:
        return int(request.path_params[name])
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


async def create_user(request: Request):
    payload = await _json_body(request)
    _require(payload, "name")
    user = await run_in_threadpool(lifecycle.create_user, payload["name"])
    return JSONResponse({"user_id": user.id, "name": user.name})


async def create_ride(request: Request):
    payload = await _json_body(request)
    _require(payload, "driver_id", "pickup", "destination", "scheduled_time")
    ride = await run_in_threadpool(
        lifecycle.create_ride,
        _int_field(payload, "driver_id"),
        payload["pickup"],
        payload["destination"],
        payload["scheduled_time"],
        seats=payload.get("seats", 4),
        route_polyline=payload.get("route_polyline"),
        estimated_distance_km=payload.get("estimated_distance_km"),
        estimated_duration_minutes=payload.get("estimated_duration_minutes"),
    )
    worker = _worker(request)
    if worker is not None:
        worker.publish_ride(ride.id)
    return JSONResponse({"ride_id": ride.id})


async def create_request(request: Request):
    payload = await _json_body(request)
    _require(payload, "rider_id", "pickup", "destination", "scheduled_time")
    rr = await run_in_threadpool(
        lifecycle.create_request,
        _int_field(payload, "rider_id"),
        payload["pickup"],
        payload["destination"],
        payload["scheduled_time"],
        seats_needed=payload.get("seats_needed", 1),
        auto_match=payload.get("auto_match", True),
        max_wait_minutes=payload.get("max_wait_minutes"),
        max_walking_distance_km=payload.get("max_walking_distance_km"),
    )
    worker = _worker(request)
    if worker is not None:
        worker.publish_request(rr.id)
    return JSONResponse({"request_id": rr.id, "status": rr.status})


async def get_ride(request: Request):
    ride = await run_in_threadpool(lifecycle.get_ride, _path_id(request, "ride_id"))
    return JSONResponse(ride_json(ride))


async def get_request(request: Request):
    rr = await run_in_threadpool(lifecycle.get_request, _path_id(request, "request_id"))
    return JSONResponse(request_json(rr))


async def pending_requests(request: Request):
    rows = await run_in_threadpool(lifecycle.pending_requests)
    return JSONResponse([request_json(r) for r in rows])


async def request_candidates(request: Request):
    candidates = await run_in_threadpool(find_candidates, _path_id(request, "request_id"))
    return JSONResponse([candidate_json(c) for c in candidates])


async def assign_request(request: Request):
    payload = await _json_body(request)
    _require(payload, "ride_id", "request_id")
    result = await run_in_threadpool(assign, _int_field(payload, "ride_id"), _int_field(payload, "request_id"))
    return JSONResponse({
        "ride_id": result.ride_id,
        "request_id": result.request_id,
        "seats_reserved": result.seats_reserved,
        "seats_remaining": result.seats_remaining,
    })


async def trigger_sweep(request: Request):
    matched = await run_in_threadpool(run_sweep)
    return JSONResponse({"matched": matched})


async def trigger_expiration(request: Request):
    expired = await run_in_threadpool(expire_stale)
    return JSONResponse({"expired": expired})


def _ride_action(operation):
    async def endpoint(request: Request):
        ride = await run_in_threadpool(operation, _path_id(request, "ride_id"))
        return JSONResponse(ride_json(ride))
    return endpoint


def _request_action(operation):
    async def endpoint(request: Request):
        rr = await run_in_threadpool(operation, _path_id(request, "request_id"))
        return JSONResponse(request_json(rr))
    return endpoint


async def cancel_ride(request: Request):
    payload = await _json_body(request) if await request.body() else {}
    ride = await run_in_threadpool(
        lifecycle.cancel_ride, _path_id(request, "ride_id"), payload.get("reason", "Cancelled by driver")
    )
    return JSONResponse(ride_json(ride))


async def cancel_request(request: Request):
    payload = await _json_body(request) if await request.body() else {}
    rr = await run_in_threadpool(
        lifecycle.cancel_request, _path_id(request, "request_id"), payload.get("reason", "Cancelled by user")
    )
    return JSONResponse(request_json(rr))


async def update_location(request: Request):
    payload = await _json_body(request)
    _require(payload, "lat", "lng")
    ride = await run_in_threadpool(
        lifecycle.update_ride_location, _path_id(request, "ride_id"), payload["lat"], payload["lng"]
    )
    return JSONResponse(ride_json(ride))


async def ride_passengers(request: Request):
    rows = await run_in_threadpool(lifecycle.ride_passengers, _path_id(request, "ride_id"))
    return JSONResponse([request_json(r) for r in rows])


async def rider_current_ride(request: Request):
    found = await run_in_threadpool(lifecycle.current_ride_for_rider, _path_id(request, "user_id"))
    if found is None:
        return JSONResponse({"error": "no active ride"}, status_code=404)
    rr, ride = found
    return JSONResponse({"request": request_json(rr), "ride": ride_json(ride)})


async def driver_upcoming_rides(request: Request):
    rows = await run_in_threadpool(lifecycle.upcoming_rides, _path_id(request, "user_id"))
    return JSONResponse([ride_json(r) for r in rows])


async def user_history(request: Request):
    history = await run_in_threadpool(lifecycle.ride_history, _path_id(request, "user_id"))
    return JSONResponse({
        "rides": [ride_json(r) for r in history.rides],
        "requests": [request_json(r) for r in history.requests],
    })


async def user_notifications(request: Request):
    unread_only = request.query_params.get("unread") in ("1", "true")
    rows = await run_in_threadpool(list_notifications, _path_id(request, "user_id"), unread_only)
    return JSONResponse([
        {
            "id": n.id,
            "title": n.title,
            "message": n.message,
            "type": n.type,
            "ride_id": n.ride_id,
            "request_id": n.request_id,
            "read": n.read,
            "created_at": _iso(n.created_at),
        }
        for n in rows
    ])


def _error(status_code):
    async def handler(request: Request, exc: Exception):
        return JSONResponse({"error": str(exc)}, status_code=status_code)
    return handler


exception_handlers = {
    ValidationError: _error(400),
    NotFoundError: _error(404),
    InvalidTransition: _error(409),
    ConcurrentAssignmentConflict: _error(409),
    PersistenceError: _error(503),
}


routes = [
    Route("/users", create_user, methods=["POST"]),
    Route("/users/{user_id}/notifications", user_notifications, methods=["GET"]),
    Route("/users/{user_id}/current-ride", rider_current_ride, methods=["GET"]),
    Route("/users/{user_id}/upcoming-rides", driver_upcoming_rides, methods=["GET"]),
    Route("/users/{user_id}/history", user_history, methods=["GET"]),
    Route("/rides", create_ride, methods=["POST"]),
    Route("/rides/{ride_id}", get_ride, methods=["GET"]),
    Route("/rides/{ride_id}/passengers", ride_passengers, methods=["GET"]),
    Route("/rides/{ride_id}/start", _ride_action(lifecycle.start_ride), methods=["POST"]),
    Route("/rides/{ride_id}/complete", _ride_action(lifecycle.complete_ride), methods=["POST"]),
    Route("/rides/{ride_id}/cancel", cancel_ride, methods=["POST"]),
    Route("/rides/{ride_id}/location", update_location, methods=["POST"]),
    Route("/requests", create_request, methods=["POST"]),
    Route("/requests/pending", pending_requests, methods=["GET"]),
    Route("/requests/{request_id}", get_request, methods=["GET"]),
    Route("/requests/{request_id}/candidates", request_candidates, methods=["GET"]),
    Route("/requests/{request_id}/cancel", cancel_request, methods=["POST"]),
    Route("/requests/{request_id}/driver-accept", _request_action(lifecycle.driver_accept_request), methods=["POST"]),
    Route("/requests/{request_id}/arrived", _request_action(lifecycle.mark_driver_arrived), methods=["POST"]),
    Route("/requests/{request_id}/pickup", _request_action(lifecycle.confirm_pickup), methods=["POST"]),
    Route("/requests/{request_id}/dropoff", _request_action(lifecycle.confirm_dropoff), methods=["POST"]),
    Route("/assign", assign_request, methods=["POST"]),
    Route("/match/sweep", trigger_sweep, methods=["POST"]),
    Route("/match/expire", trigger_expiration, methods=["POST"]),
]


@asynccontextmanager
async def lifespan(app):
    init_db()
    worker = None
    if config.WORKER_ENABLED:
        worker = MatchingWorker()
        await worker.start()
    app.state.worker = worker
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()


app = Starlette(debug=config.DEBUG, routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)
