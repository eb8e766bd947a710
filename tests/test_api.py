"""
HTTP endpoint tests.
Covers:
- Creating users, rides and requests, with validation errors as 400
- Unknown ids as 404, illegal transitions and assignment conflicts as 409
- Manual assignment, sweep and expiration triggers
- Candidate listing, passenger flow and rider reads
"""
from datetime import timedelta

import pytest

from conftest import DALLAS, DENTON, NEAR_DENTON, T0

WHEN = T0.isoformat() + "Z"


# Starlette is an ASGI app → must use ASGITransport with AsyncClient.
async def _async_client():
    from main import app
    from httpx import AsyncClient, ASGITransport
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


async def _create_user(client, name):
    resp = await client.post("/users", json={"name": name})
    assert resp.status_code == 200
    return resp.json()["user_id"]


async def _offer_ride(client, driver_id, seats=4, when=WHEN):
    resp = await client.post("/rides", json={
        "driver_id": driver_id,
        "pickup": list(DENTON),
        "destination": list(DALLAS),
        "scheduled_time": when,
        "seats": seats,
    })
    assert resp.status_code == 200
    return resp.json()["ride_id"]


async def _post_request(client, rider_id, seats_needed=1, when=WHEN):
    resp = await client.post("/requests", json={
        "rider_id": rider_id,
        "pickup": list(NEAR_DENTON),
        "destination": list(DALLAS),
        "scheduled_time": when,
        "seats_needed": seats_needed,
    })
    assert resp.status_code == 200
    return resp.json()["request_id"]


@pytest.mark.asyncio
async def test_api_create_ride_and_fetch():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        ride_id = await _offer_ride(client, driver, seats=3)
        resp = await client.get(f"/rides/{ride_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == ride_id
    assert body["status"] == "pending"
    assert body["seats_available"] == 3
    assert body["scheduled_time"] == T0.isoformat()


@pytest.mark.asyncio
async def test_api_create_request_success():
    async with await _async_client() as client:
        rider = await _create_user(client, "Riley")
        resp = await client.post("/requests", json={
            "rider_id": rider,
            "pickup": list(NEAR_DENTON),
            "destination": list(DALLAS),
            "scheduled_time": WHEN,
        })
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert "request_id" in resp.json()


@pytest.mark.asyncio
async def test_api_create_request_unknown_user():
    async with await _async_client() as client:
        resp = await client.post("/requests", json={
            "rider_id": 9999,
            "pickup": list(NEAR_DENTON),
            "destination": list(DALLAS),
            "scheduled_time": WHEN,
        })
    assert resp.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"rider_id": 1},
    {"rider_id": "abc", "pickup": [0, 0], "destination": [1, 1], "scheduled_time": "2030-01-01T08:00:00Z"},
    {"rider_id": 1, "pickup": [95, 0], "destination": [1, 1], "scheduled_time": "2030-01-01T08:00:00Z"},
    {"rider_id": 1, "pickup": [0, 0], "destination": [1, 1], "scheduled_time": "soon"},
    {"rider_id": 1, "pickup": [0, 0], "destination": [1, 1], "scheduled_time": "2030-01-01T08:00:00Z",
     "seats_needed": 0},
])
async def test_api_create_request_invalid(payload, make_user):
    make_user()
    async with await _async_client() as client:
        resp = await client.post("/requests", json=payload)
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.asyncio
async def test_api_rejects_non_json_body():
    async with await _async_client() as client:
        resp = await client.post("/users", content=b"not json", headers={"content-type": "application/json"})
        resp2 = await client.post("/users", json=["a", "list"])
    assert resp.status_code == 400
    assert resp2.status_code == 400


@pytest.mark.asyncio
async def test_api_get_ride_not_found():
    async with await _async_client() as client:
        resp = await client.get("/rides/99999")
        resp2 = await client.get("/rides/not-a-number")
    assert resp.status_code == 404
    assert resp2.status_code == 400


@pytest.mark.asyncio
async def test_api_candidates_ranked():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        rider = await _create_user(client, "Riley")
        ride_id = await _offer_ride(client, driver)
        request_id = await _post_request(client, rider)
        resp = await client.get(f"/requests/{request_id}/candidates")
    assert resp.status_code == 200
    candidates = resp.json()
    assert [c["ride_id"] for c in candidates] == [ride_id]
    assert 0 < candidates[0]["score"] <= 1
    assert candidates[0]["detour_km"] == pytest.approx(1.11, abs=0.05)


@pytest.mark.asyncio
async def test_api_assign_and_conflict():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        rider = await _create_user(client, "Riley")
        ride_id = await _offer_ride(client, driver, seats=2)
        request_id = await _post_request(client, rider, seats_needed=2)
        resp = await client.post("/assign", json={"ride_id": ride_id, "request_id": request_id})
        again = await client.post("/assign", json={"ride_id": ride_id, "request_id": request_id})
        ride = (await client.get(f"/rides/{ride_id}")).json()
        passengers = (await client.get(f"/rides/{ride_id}/passengers")).json()
    assert resp.status_code == 200
    assert resp.json() == {"ride_id": ride_id, "request_id": request_id, "seats_reserved": 2, "seats_remaining": 0}
    assert again.status_code == 409
    assert ride["seats_available"] == 0
    assert ride["status"] == "accepted"
    assert [p["id"] for p in passengers] == [request_id]


@pytest.mark.asyncio
async def test_api_sweep_matches_pending():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        ride_id = await _offer_ride(client, driver, seats=1)
        first = await _post_request(client, await _create_user(client, "R1"))
        second = await _post_request(client, await _create_user(client, "R2"))
        resp = await client.post("/match/sweep")
        pending = (await client.get("/requests/pending")).json()
        matched = (await client.get(f"/requests/{first}")).json()
    assert resp.status_code == 200
    assert resp.json() == {"matched": 1}
    assert [p["id"] for p in pending] == [second]
    assert matched["ride_id"] == ride_id


@pytest.mark.asyncio
async def test_api_expire_trigger():
    past = (T0 - timedelta(days=3650)).isoformat()
    async with await _async_client() as client:
        rider = await _create_user(client, "Riley")
        request_id = await _post_request(client, rider, when=past)
        resp = await client.post("/match/expire")
        stored = (await client.get(f"/requests/{request_id}")).json()
    assert resp.json() == {"expired": 1}
    assert stored["status"] == "cancelled"
    assert stored["cancel_reason"] == "expired"


@pytest.mark.asyncio
async def test_api_cancel_unknown():
    async with await _async_client() as client:
        resp = await client.post("/requests/99999/cancel")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_api_cancel_success():
    async with await _async_client() as client:
        rider = await _create_user(client, "Riley")
        request_id = await _post_request(client, rider)
        resp = await client.post(f"/requests/{request_id}/cancel", json={"reason": "changed plans"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancel_reason"] == "changed plans"
        pending = (await client.get("/requests/pending")).json()
        again = await client.post(f"/requests/{request_id}/cancel")
    assert request_id not in [p["id"] for p in pending]
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_api_passenger_flow():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        rider = await _create_user(client, "Riley")
        ride_id = await _offer_ride(client, driver)
        request_id = await _post_request(client, rider)
        await client.post("/assign", json={"ride_id": ride_id, "request_id": request_id})

        current = (await client.get(f"/users/{rider}/current-ride")).json()
        assert current["ride"]["id"] == ride_id

        assert (await client.post(f"/requests/{request_id}/driver-accept")).json()["status"] == "driver_accepted"
        assert (await client.post(f"/rides/{ride_id}/start")).json()["status"] == "in_progress"
        moved = await client.post(f"/rides/{ride_id}/location", json={"lat": 33.1, "lng": -97.0})
        assert moved.json()["current_location"] == [33.1, -97.0]
        assert (await client.post(f"/requests/{request_id}/arrived")).json()["status"] == "pickup_pending"
        assert (await client.post(f"/requests/{request_id}/pickup")).json()["status"] == "picked_up"

        early = await client.post(f"/rides/{ride_id}/complete")
        assert early.status_code == 409

        assert (await client.post(f"/requests/{request_id}/dropoff")).json()["status"] == "completed"
        done = await client.post(f"/rides/{ride_id}/complete")
        assert done.json()["status"] == "completed"

        gone = await client.get(f"/users/{rider}/current-ride")
        notes = (await client.get(f"/users/{rider}/notifications")).json()
    assert gone.status_code == 404
    assert notes[-1]["type"] == "ride_matched"


@pytest.mark.asyncio
async def test_api_cancel_ride_twice_fails():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        ride_id = await _offer_ride(client, driver)
        first = await client.post(f"/rides/{ride_id}/cancel")
        second = await client.post(f"/rides/{ride_id}/cancel", json={"reason": "again"})
    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_api_rejects_string_auto_match():
    async with await _async_client() as client:
        rider = await _create_user(client, "Riley")
        resp = await client.post("/requests", json={
            "rider_id": rider,
            "pickup": list(NEAR_DENTON),
            "destination": list(DALLAS),
            "scheduled_time": WHEN,
            "auto_match": "false",
        })
    assert resp.status_code == 400
    assert "auto_match" in resp.json()["error"]


@pytest.mark.asyncio
async def test_api_upcoming_rides_and_history():
    async with await _async_client() as client:
        driver = await _create_user(client, "Dana")
        kept = await _offer_ride(client, driver)
        dropped = await _offer_ride(client, driver, when=(T0 + timedelta(hours=1)).isoformat())
        await client.post(f"/rides/{dropped}/cancel", json={"reason": "car trouble"})
        upcoming = await client.get(f"/users/{driver}/upcoming-rides")
        history = await client.get(f"/users/{driver}/history")
        missing = await client.get("/users/9999/history")
    assert [r["id"] for r in upcoming.json()] == [kept]
    assert [r["id"] for r in history.json()["rides"]] == [dropped]
    assert history.json()["requests"] == []
    assert missing.status_code == 404
