"""
HTTP and WebSocket tests against the FastAPI app.
The session dependency is pointed at a per-test SQLite database.
"""
import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from hemobank.api.v1.deps import get_db
from hemobank.core.security import Actor, create_access_token
from hemobank.database import init_db, make_session_factory
from hemobank.main import app
from hemobank.models import NotificationType
from hemobank.services.audit_service import audit_service
from hemobank.services.notification_service import notification_service
from tests.conftest import make_test_engine
from tests.helpers import add_units, make_donor, make_hospital, make_staff, make_super_admin


@pytest.fixture
def api(db_path, monkeypatch):
    engine = make_test_engine(db_path)
    asyncio.run(init_db(engine))
    session_factory = make_session_factory(engine)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def skip_init_db():
        return None

    monkeypatch.setattr("hemobank.main.init_db", skip_init_db)
    app.dependency_overrides[get_db] = override_get_db

    def seed(builder):
        async def main():
            async with session_factory() as db:
                result = await builder(db)
            await audit_service.flush()
            return result

        return asyncio.run(main())

    with TestClient(app) as client:
        client.seed = seed
        yield client

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


def auth(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {create_access_token(actor)}"}


async def hospital_with_stock(db, units=2):
    hospital, admin = await make_hospital(db)
    staff = await make_staff(db, hospital)
    donor = await make_donor(db, hospital)
    await add_units(db, hospital, donor, units)
    return hospital, admin, staff, donor


def test_root_and_health(api):
    assert api.get("/").json()["status"] == "running"
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["jobs"] == {}
    assert "X-Request-ID" in response.headers


def test_requests_require_a_valid_token(api):
    response = api.get("/api/v1/blood-requests/")
    assert response.status_code == 401
    assert response.json() == {
        "success": False, "error": {"code": "not_authenticated", "message": "Not authenticated"},
    }
    response = api.get("/api/v1/blood-requests/", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_request_lifecycle_over_http(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)

    response = api.post(
        "/api/v1/blood-requests/",
        json={"patient_name": "Jane Doe", "blood_group": "O+", "quantity": 2, "reason": "Surgery"},
        headers=auth(staff),
    )
    assert response.status_code == 201
    request_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    forbidden = api.post(f"/api/v1/blood-requests/{request_id}/approve", headers=auth(staff))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "not_authorized"

    approved = api.post(f"/api/v1/blood-requests/{request_id}/approve", headers=auth(admin))
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert len(approved.json()["reserved_units"]) == 2

    again = api.post(f"/api/v1/blood-requests/{request_id}/approve", headers=auth(admin))
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "invalid_state"
    assert again.json()["error"]["details"] == {"current_state": "approved"}

    fulfilled = api.post(f"/api/v1/blood-requests/{request_id}/fulfill", headers=auth(admin))
    assert fulfilled.json()["status"] == "fulfilled"
    assert len(fulfilled.json()["fulfilled_units"]) == 2

    inventory = api.get("/api/v1/blood-units/inventory", headers=auth(staff)).json()
    assert inventory["counts"]["O+"] == 0
    assert set(inventory["counts"]) == {"A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"}

    notifications = api.get("/api/v1/notifications/", headers=auth(staff)).json()
    assert [n["type"] for n in notifications["notifications"]] == [
        "BLOOD_REQUEST_FULFILLED", "BLOOD_REQUEST_APPROVED",
    ]
    assert notifications["unread_count"] == 2


def test_insufficient_stock_is_a_conflict(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)
    request_id = api.post(
        "/api/v1/blood-requests/",
        json={"patient_name": "John Roe", "blood_group": "O+", "quantity": 5, "reason": "Trauma"},
        headers=auth(admin),
    ).json()["id"]

    response = api.post(f"/api/v1/blood-requests/{request_id}/approve", headers=auth(admin))
    assert response.status_code == 409
    assert response.json()["error"]["details"] == {"available": 2, "required": 5}


def test_validation_errors_use_the_error_envelope(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)
    response = api.post(
        "/api/v1/blood-requests/", json={"patient_name": "X", "blood_group": "Z+"}, headers=auth(staff),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"

    response = api.post(
        "/api/v1/blood-requests/",
        json={"patient_name": "X", "blood_group": "A+", "quantity": 0, "reason": "r"},
        headers=auth(staff),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_input"


def test_unit_registration_and_testing(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)

    created = api.post(
        "/api/v1/blood-units/",
        json={"donor_id": str(donor.id), "blood_group": "O+", "storage": {"location": "Fridge 1", "shelf": "B2"}},
        headers=auth(staff),
    )
    assert created.status_code == 201
    unit = created.json()
    assert unit["status"] == "collected"
    assert unit["storage_location"] == "Fridge 1"

    tested = api.put(
        f"/api/v1/blood-units/{unit['id']}/test-results",
        json={"results": {"hiv": "negative", "hepatitisB": "negative", "hepatitisC": "negative", "syphilis": "negative"}},
        headers=auth(staff),
    )
    assert tested.json()["status"] == "available"

    by_bag = api.get(f"/api/v1/blood-units/bag/{unit['bag_id']}", headers=auth(staff))
    assert by_bag.json()["id"] == unit["id"]

    listed = api.get("/api/v1/blood-units/", params={"status": "available"}, headers=auth(staff)).json()
    assert listed["total"] == 3


def test_other_hospitals_see_not_found(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)

    async def outsider(db):
        _, other_admin = await make_hospital(db, name="Elsewhere")
        return other_admin

    other_admin = api.seed(outsider)
    request_id = api.post(
        "/api/v1/blood-requests/",
        json={"patient_name": "Jane Doe", "blood_group": "O+", "quantity": 1, "reason": "Surgery"},
        headers=auth(staff),
    ).json()["id"]

    response = api.get(f"/api/v1/blood-requests/{request_id}", headers=auth(other_admin))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_emergency_broadcast_requires_super_admin(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)
    root = api.seed(make_super_admin)
    body = {"title": "Mass casualty", "message": "All O- units needed"}

    assert api.post("/api/v1/notifications/emergency", json=body, headers=auth(admin)).status_code == 403
    response = api.post("/api/v1/notifications/emergency", json=body, headers=auth(root))
    assert response.status_code == 201
    assert {n["recipient_id"] for n in response.json()} == {str(admin.id), str(root.id)}


def test_monitor_endpoints_without_scheduler(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)
    root = api.seed(make_super_admin)

    assert api.get("/api/v1/monitor/jobs", headers=auth(admin)).json() == []
    assert api.get("/api/v1/monitor/jobs", headers=auth(staff)).status_code == 403
    assert api.post("/api/v1/monitor/jobs/stock_monitor/run", headers=auth(root)).status_code == 404

    forecast = api.get("/api/v1/monitor/forecast", params={"blood_group": "O+"}, headers=auth(staff)).json()
    assert forecast["current_stock"] == 2
    assert forecast["risk_level"] == "critical"


def test_websocket_rejects_bad_token(api):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with api.websocket_connect("/api/v1/notifications/ws?token=nope") as ws:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_websocket_ping_push_and_mark_read(api):
    hospital, admin, staff, donor = api.seed(hospital_with_stock)
    root = api.seed(make_super_admin)

    async def existing(db):
        return await notification_service.create(
            db, admin.id, NotificationType.LOW_STOCK_ALERT, "Low Stock Alert", "O+ is low", hospital_id=hospital.id,
        )

    stored = api.seed(existing)

    with api.websocket_connect(f"/api/v1/notifications/ws?token={create_access_token(admin)}") as ws:
        assert ws.receive_json() == {"event": "connected", "payload": {"unread_count": 1}}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"event": "pong"}

        ws.send_json({"type": "mark_read", "notification_id": str(stored.id)})
        assert ws.receive_json() == {"event": "notification_read", "payload": {"id": str(stored.id)}}

        ws.send_json({"type": "dance"})
        assert ws.receive_json()["event"] == "error"

        ws.send_text("{not json")
        assert ws.receive_json() == {"event": "error", "payload": {"message": "Malformed JSON"}}
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"event": "pong"}

        api.post(
            "/api/v1/notifications/emergency",
            json={"title": "Mass casualty", "message": "All O- units needed"},
            headers=auth(root),
        )
        emergency = ws.receive_json()
        assert emergency["event"] == "emergency_notification"
        assert emergency["channel"] == "role_hospital_admin"
        assert emergency["payload"]["title"] == "Mass casualty"

    assert api.get("/api/v1/notifications/unread-count", headers=auth(admin)).json() == {"unread_count": 1}


def test_transfer_over_http(api):
    supplier, supplier_admin, _, _ = api.seed(hospital_with_stock)

    async def requester(db):
        return await make_hospital(db, name="Requester")

    requester_hospital, requester_admin = api.seed(requester)
    created = api.post(
        "/api/v1/transfers/",
        json={"to_hospital_id": str(supplier.id), "blood_group": "O+", "quantity": 2, "urgency": "high"},
        headers=auth(requester_admin),
    )
    assert created.status_code == 201
    transfer_id = created.json()["id"]

    incoming = api.get("/api/v1/transfers/", params={"direction": "incoming"}, headers=auth(supplier_admin)).json()
    assert incoming["total"] == 1
    assert api.get("/api/v1/transfers/", params={"direction": "sideways"},
                   headers=auth(supplier_admin)).status_code == 422

    assert api.post(f"/api/v1/transfers/{transfer_id}/approve", headers=auth(supplier_admin)).json()["status"] == "approved"
    completed = api.post(f"/api/v1/transfers/{transfer_id}/complete", headers=auth(requester_admin))
    assert completed.json()["status"] == "completed"

    inventory = api.get("/api/v1/blood-units/inventory", headers=auth(requester_admin)).json()
    assert inventory["counts"]["O+"] == 2


def test_nearby_donors_endpoint(api):
    async def located(db):
        hospital, admin = await make_hospital(db, latitude=40.0, longitude=-74.0)
        donor = await make_donor(db, hospital, latitude=40.05, longitude=-74.0)
        unlocated, other_admin = await make_hospital(db, name="Nowhere")
        return admin, donor, other_admin

    admin, donor, other_admin = api.seed(located)

    matches = api.get("/api/v1/donors/nearby", params={"blood_group": "O+"}, headers=auth(admin)).json()
    assert [m["donor_id"] for m in matches] == [str(donor.id)]
    assert matches[0]["distance_km"] == 5.6

    response = api.get("/api/v1/donors/nearby", params={"blood_group": "O+"}, headers=auth(other_admin))
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Hospital location coordinates are required"

    explicit = api.get(
        "/api/v1/donors/nearby",
        params={"blood_group": "O+", "latitude": 40.0, "longitude": -74.0, "radius_km": 1},
        headers=auth(other_admin),
    ).json()
    assert explicit == []
