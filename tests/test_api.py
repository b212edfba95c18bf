import httpx
import pytest

from fleetops.db import get_db_session
from fleetops.main import app

pytestmark = pytest.mark.anyio

ADMIN = {"Authorization": "Bearer admin-token"}
SUPERVISOR = {"Authorization": "Bearer sam-token"}
MASTER = {"Authorization": "Bearer root-token"}


@pytest.fixture
async def client(database, seed):
    async def session_override():
        async with database.Session() as session:
            yield session

    app.dependency_overrides[get_db_session] = session_override
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def new_booking(client, start, end, headers=SUPERVISOR):
    response = await client.post("/bookings", headers=headers, json={
        "customer_name": "Ravi Kumar",
        "customer_phone": "+91 98450 12345",
        "trip_type": "outstation",
        "start_at": start,
        "end_at": end,
        "pickup": "Indiranagar",
    })
    assert response.status_code == 201, response.text
    return response.json()


async def test_requests_without_bearer_token_are_rejected(client):
    response = await client.get("/bookings")
    assert response.status_code == 401
    assert response.json()["detail"] == "missing_bearer_token"

    response = await client.get("/bookings", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


async def test_booking_flow_with_conflict(client, seed):
    first = await new_booking(client, "2025-01-05T10:00:00", "2025-01-05T14:00:00")
    assert first["status"] == "inquiry"

    response = await client.post(f"/bookings/{first['id']}/vehicles", headers=SUPERVISOR, json={
        "car_id": seed.innova, "rate_type": "per_day", "rate_per_day": 2200, "driver_name": "Manju",
    })
    assert response.status_code == 201
    assert response.json()["computed_total"] == 2200

    response = await client.post(f"/bookings/{first['id']}/status", headers=SUPERVISOR, json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"

    # Aware timestamps are normalized to UTC: 20:00+05:30 is 14:30 UTC, inside the gap
    second = await new_booking(client, "2025-01-05T20:00:00+05:30", "2025-01-05T21:30:00+05:30")
    assert second["start_at"].startswith("2025-01-05T14:30:00")

    response = await client.post(f"/bookings/{second['id']}/vehicles", headers=SUPERVISOR, json={
        "car_id": seed.innova, "rate_type": "total", "rate_total": 3000,
    })
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "BookingConflictError"
    assert body["conflicts"][0]["conflict_booking_ref"] == first["booking_ref"]
    assert body["conflicts"][0]["conflict_booked_by"] == "Sam Supervisor"

    response = await client.get(f"/bookings/{first['id']}", headers=ADMIN)
    assert response.status_code == 200
    assert [v["car_id"] for v in response.json()["vehicles"]] == [seed.innova]

    response = await client.get(f"/bookings/{first['id']}/audit", headers=ADMIN)
    assert [e["action"] for e in response.json()] == ["status_changed", "vehicle_assigned", "created"]


async def test_availability_endpoint(client, seed):
    booking = await new_booking(client, "2025-01-05T10:00:00", "2025-01-05T14:00:00")
    await client.post(f"/bookings/{booking['id']}/vehicles", headers=SUPERVISOR,
                      json={"car_id": seed.innova, "rate_total": 1000})

    response = await client.post("/availability", headers=SUPERVISOR, json={
        "start_at": "2025-01-05T14:30:00", "end_at": "2025-01-05T16:00:00",
    })
    assert response.status_code == 200
    by_car = {r["car_id"]: r for r in response.json()}
    assert by_car[seed.innova]["is_available"] is False
    assert by_car[seed.innova]["conflict_booking_ref"] == booking["booking_ref"]
    assert by_car[seed.ertiga]["is_available"] is True

    response = await client.post("/availability", headers=SUPERVISOR, json={
        "start_at": "2025-01-05T15:01:00", "end_at": "2025-01-05T16:00:00", "car_ids": [seed.innova, 4242],
    })
    first, missing = response.json()
    assert first["is_available"] is True
    assert missing["car_id"] == 4242 and missing["error"]

    response = await client.post("/availability", headers=SUPERVISOR, json={
        "start_at": "2025-01-05T16:00:00", "end_at": "2025-01-05T15:00:00",
    })
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidRangeError"


async def test_terminal_transition_and_bad_dates_are_422(client, seed):
    booking = await new_booking(client, "2025-01-05T10:00:00", "2025-01-05T14:00:00")

    response = await client.put(f"/bookings/{booking['id']}/dates", headers=SUPERVISOR, json={
        "start_at": "2025-01-05T14:00:00", "end_at": "2025-01-05T10:00:00",
    })
    assert response.status_code == 422

    response = await client.post(f"/bookings/{booking['id']}/status", headers=SUPERVISOR,
                                 json={"status": "cancelled"})
    assert response.status_code == 200

    response = await client.post(f"/bookings/{booking['id']}/status", headers=SUPERVISOR,
                                 json={"status": "confirmed"})
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidTransitionError"


async def test_invoice_and_rates(client, seed):
    booking = await new_booking(client, "2025-01-05T10:00:00", "2025-01-07T10:00:00")
    response = await client.post(f"/bookings/{booking['id']}/vehicles", headers=SUPERVISOR, json={
        "car_id": seed.ertiga, "rate_type": "per_km", "rate_per_km": 12, "estimated_km": 400,
        "advance_amount": 1500,
    })
    vehicle = response.json()
    assert vehicle["computed_total"] == 4800

    response = await client.patch(f"/bookings/{booking['id']}/vehicles/{vehicle['id']}", headers=SUPERVISOR,
                                  json={"final_km": 450})
    assert response.json()["computed_total"] == 5400

    response = await client.post(f"/bookings/{booking['id']}/invoice", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["amount_due"] == 3900


async def test_fleet_and_admin_endpoints_check_roles(client, seed):
    response = await client.post("/cars", headers=SUPERVISOR, json={"vehicle_number": "KA09XY0001"})
    assert response.status_code == 403

    response = await client.post("/cars", headers=ADMIN, json={"vehicle_number": "KA09XY0001", "seats": 4})
    assert response.status_code == 201

    response = await client.post("/admin/organizations", headers=ADMIN, json={"name": "Rogue"})
    assert response.status_code == 403

    response = await client.post("/admin/organizations", headers=MASTER, json={"name": "Coastal Cabs"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    response = await client.post("/admin/users", headers=ADMIN, json={"name": "Nina", "email": "nina@acme.test"})
    token = response.json()["token"]
    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


async def test_other_tenant_sees_nothing(client, seed):
    booking = await new_booking(client, "2025-01-05T10:00:00", "2025-01-05T14:00:00")

    outsider = {"Authorization": "Bearer olga-token"}
    response = await client.get(f"/bookings/{booking['id']}", headers=outsider)
    assert response.status_code == 404
    response = await client.get("/bookings", headers=outsider)
    assert response.json() == []


async def test_master_admin_must_pick_an_organization(client, seed):
    response = await client.post("/bookings", headers=MASTER, json={
        "customer_name": "Ravi Kumar", "customer_phone": "9845012345",
        "start_at": "2025-01-05T10:00:00", "end_at": "2025-01-05T14:00:00",
    })
    assert response.status_code == 422
    assert response.json()["error"] == "OrganizationRequiredError"

    response = await client.post("/cars", headers=MASTER, json={"vehicle_number": "KA09XY0002"})
    assert response.status_code == 422

    scoped = {**MASTER, "X-Organization-Id": str(seed.org_id)}
    booking = await new_booking(client, "2025-01-05T10:00:00", "2025-01-05T14:00:00", headers=scoped)
    assert booking["organization_id"] == seed.org_id
    response = await client.post("/cars", headers=scoped, json={"vehicle_number": "KA09XY0002"})
    assert response.status_code == 201
    assert response.json()["organization_id"] == seed.org_id


async def test_reset_token_endpoint(client, seed):
    response = await client.post(f"/admin/users/{seed.supervisor.user_id}/reset-token", headers=SUPERVISOR)
    assert response.status_code == 403

    response = await client.post(f"/admin/users/{seed.supervisor.user_id}/reset-token", headers=ADMIN)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True

    response = await client.get("/bookings", headers=SUPERVISOR)
    assert response.status_code == 401
    response = await client.get("/bookings", headers={"Authorization": f"Bearer {body['token']}"})
    assert response.status_code == 200

    response = await client.post(f"/admin/users/{seed.outsider.user_id}/reset-token", headers=ADMIN)
    assert response.status_code == 404
