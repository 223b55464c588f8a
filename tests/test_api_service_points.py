from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from servicebook.api import get_db, router
from servicebook.db import Base


def make_client(tmp_path):
    db_path = tmp_path / "test_servicebook.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _create_partner(client, email="owner@tyremasters.com", **overrides):
    payload = {
        "email": email,
        "company_name": "Tyre Masters",
        "phone": "+380501112233",
    }
    payload.update(overrides)
    response = client.post("/api/partners", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _point_payload(partner_id, **overrides):
    payload = {
        "partner_id": partner_id,
        "name": "Central",
        "region": "Kyiv",
        "city": "Kyiv",
        "address": "Main st. 1",
        "working_hours": {
            "monday": {"open": "09:00", "close": "18:00"},
            "tuesday": "09:00-18:00",
            "sunday": "closed",
        },
        "service_posts": [
            {"name": "Post 1", "service_time_minutes": 60, "start": "09:00", "end": "18:00"},
        ],
    }
    payload.update(overrides)
    return payload


def test_create_partner_defaults_contact_person_and_creates_user(tmp_path):
    client = make_client(tmp_path)

    body = _create_partner(client, email=" Owner@TyreMasters.com ")
    assert body["id"] > 0
    assert body["user_id"] > 0
    assert body["email"] == "owner@tyremasters.com"
    assert body["contact_person"] == "Tyre Masters"
    assert body["status"] == "active"
    assert body["is_active"] is True

    fetched = client.get(f"/api/partners/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["company_name"] == "Tyre Masters"


def test_create_partner_rejects_duplicate_email(tmp_path):
    client = make_client(tmp_path)
    _create_partner(client)

    duplicate = client.post(
        "/api/partners",
        json={"email": "owner@tyremasters.com", "company_name": "Other", "phone": "12345"},
    )
    assert duplicate.status_code == 422
    assert "already exists" in duplicate.json()["detail"]


def test_partner_status_accepts_aliases_and_rejects_unknown(tmp_path):
    client = make_client(tmp_path)

    legacy = _create_partner(client, status="приостановлена")
    assert legacy["status"] == "suspended"
    assert legacy["is_active"] is False

    invalid = client.post(
        "/api/partners",
        json={"email": "x@tyremasters.com", "company_name": "X", "phone": "12345", "status": "archived"},
    )
    assert invalid.status_code == 422

    updated = client.patch(f"/api/partners/{legacy['id']}", json={"status": "0"})
    assert updated.status_code == 200
    assert updated.json()["status"] == "active"

    listed = client.get("/api/partners", params={"status": "working"})
    assert [p["id"] for p in listed.json()] == [legacy["id"]]


def test_create_service_point_normalizes_hours_and_attaches_services(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)

    balancing = client.post("/api/services", json={"name": "Balancing"})
    assert balancing.status_code == 201
    fitting = client.post("/api/services", json={"name": "Tyre fitting", "description": "Swap tyres"})
    assert fitting.status_code == 201

    created = client.post(
        "/api/service-points",
        json=_point_payload(
            partner["id"],
            services=[
                {"service_id": fitting.json()["id"], "comment": "Up to R22"},
                {"service_id": balancing.json()["id"]},
            ],
        ),
    )
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["working_hours"]["tuesday"] == {"open": "09:00", "close": "18:00"}
    assert body["working_hours"]["sunday"] == "closed"
    assert body["status"] == "active"
    assert body["is_active"] is True
    assert sorted(body["services"]) == sorted([balancing.json()["id"], fitting.json()["id"]])

    services = client.get(f"/api/service-points/{body['id']}/services")
    assert services.status_code == 200
    comments = {row["name"]: row["comment"] for row in services.json()}
    assert comments == {"Balancing": None, "Tyre fitting": "Up to R22"}


def test_create_service_point_validation_errors(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)

    bad_hours = client.post(
        "/api/service-points",
        json=_point_payload(partner["id"], working_hours={"monday": {"open": "18:00", "close": "09:00"}}),
    )
    assert bad_hours.status_code == 422

    unknown_partner = client.post("/api/service-points", json=_point_payload(9999))
    assert unknown_partner.status_code == 422
    assert unknown_partner.json()["detail"] == "Partner not found"

    unknown_service = client.post(
        "/api/service-points",
        json=_point_payload(partner["id"], services=[{"service_id": 4242}]),
    )
    assert unknown_service.status_code == 422
    assert "4242" in unknown_service.json()["detail"]


def test_replace_service_point_services(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    first = client.post("/api/services", json={"name": "Wheel alignment"}).json()
    second = client.post("/api/services", json={"name": "Storage"}).json()
    point = client.post(
        "/api/service-points",
        json=_point_payload(partner["id"], services=[{"service_id": first["id"]}]),
    ).json()

    replaced = client.put(
        f"/api/service-points/{point['id']}/services",
        json=[{"service_id": second["id"], "comment": "Seasonal"}],
    )
    assert replaced.status_code == 200
    assert replaced.json()["services"] == [second["id"]]
    assert replaced.json()["service_comments"] == [{"service_id": second["id"], "comment": "Seasonal"}]


def test_v1_list_hides_inactive_points_unless_asked(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    active = client.post("/api/service-points", json=_point_payload(partner["id"], name="Open")).json()
    suspended = client.post(
        "/api/service-points",
        json=_point_payload(partner["id"], name="Paused", status="приостановлена"),
    ).json()
    assert suspended["status"] == "suspended"

    visible = client.get("/api/service-points")
    assert [p["id"] for p in visible.json()] == [active["id"]]

    everything = client.get("/api/service-points", params={"include_inactive": "true"})
    assert {p["id"] for p in everything.json()} == {active["id"], suspended["id"]}

    # a single point is reachable whatever its status
    assert client.get(f"/api/service-points/{suspended['id']}").status_code == 200


def test_update_service_point_and_status_patch(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    point = client.post("/api/service-points", json=_point_payload(partner["id"])).json()

    updated = client.put(
        f"/api/service-points/{point['id']}",
        json={"name": "Central 2", "working_hours": {"friday": "10:00-16:00"}, "status": "working"},
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["name"] == "Central 2"
    assert body["working_hours"] == {"friday": {"open": "10:00", "close": "16:00"}}
    assert body["status"] == "active"

    closed = client.patch(f"/api/service-points/{point['id']}/status", json={"status": "2"})
    assert closed.status_code == 200
    assert closed.json()["status"] == "closed"
    assert closed.json()["is_active"] is False

    invalid = client.patch(f"/api/service-points/{point['id']}/status", json={"status": "gone"})
    assert invalid.status_code == 422


def test_delete_partner_soft_deletes_its_points(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    point = client.post("/api/service-points", json=_point_payload(partner["id"])).json()

    listed = client.get(f"/api/partners/{partner['id']}/service-points")
    assert [p["id"] for p in listed.json()] == [point["id"]]

    deleted = client.delete(f"/api/partners/{partner['id']}")
    assert deleted.status_code == 204

    assert client.get(f"/api/partners/{partner['id']}").status_code == 404
    assert client.get(f"/api/service-points/{point['id']}").status_code == 404
    assert client.get("/api/service-points", params={"include_inactive": "true"}).json() == []

    # the login account goes with the partner, so the email can be registered again
    again = client.post(
        "/api/partners",
        json={"email": "owner@tyremasters.com", "company_name": "Tyre Masters", "phone": "+380501112233"},
    )
    assert again.status_code == 201


def test_services_crud(tmp_path):
    client = make_client(tmp_path)

    created = client.post("/api/services", json={"name": "Tyre repair"})
    assert created.status_code == 201
    service_id = created.json()["id"]

    duplicate = client.post("/api/services", json={"name": "Tyre repair"})
    assert duplicate.status_code == 422

    updated = client.patch(f"/api/services/{service_id}", json={"is_active": False})
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False

    active_only = client.get("/api/services", params={"include_inactive": "false"})
    assert active_only.json() == []

    assert client.delete(f"/api/services/{service_id}").status_code == 204
    assert client.get(f"/api/services/{service_id}").status_code == 404
    assert client.delete(f"/api/services/{service_id}").status_code == 404


def test_delete_partner_with_bookings_suspends_instead(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    point = client.post("/api/service-points", json=_point_payload(partner["id"])).json()
    slots = client.post(
        f"/api/service-points/{point['id']}/schedule",
        json={"date": "2030-01-07", "post_number": 1},
    ).json()["created"]
    booking = client.post(
        "/api/bookings",
        json={
            "schedule_id": slots[0]["id"],
            "full_name": "Olena Koval",
            "phone": "+380671234567",
            "car_number": "AA1234BB",
        },
    )
    assert booking.status_code == 201, booking.text

    refused = client.delete(f"/api/partners/{partner['id']}")
    assert refused.status_code == 422
    assert "bookings" in refused.json()["detail"]

    kept = client.get(f"/api/partners/{partner['id']}")
    assert kept.status_code == 200
    assert kept.json()["status"] == "suspended"
    assert kept.json()["is_active"] is False
    assert client.get(f"/api/service-points/{point['id']}").json()["status"] == "suspended"
    assert client.get(f"/api/bookings/{booking.json()['id']}").status_code == 200


def test_create_partner_rejects_malformed_email(tmp_path):
    client = make_client(tmp_path)

    for email in ["not-an-email", "owner@", "@tyremasters.com", "owner tyremasters.com"]:
        response = client.post(
            "/api/partners",
            json={"email": email, "company_name": "Tyre Masters", "phone": "+380501112233"},
        )
        assert response.status_code == 422, email

    assert client.get("/api/partners").json() == []


def test_update_service_point_applies_fields_and_status_together(tmp_path):
    client = make_client(tmp_path)
    partner = _create_partner(client)
    point = client.post("/api/service-points", json=_point_payload(partner["id"])).json()

    updated = client.put(
        f"/api/service-points/{point['id']}",
        json={"name": "Central Paused", "status": "приостановлена"},
        headers={"X-Actor-Email": "manager@tyremasters.com"},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Central Paused"
    assert updated.json()["status"] == "suspended"
    assert updated.json()["is_active"] is False

    rejected = client.put(
        f"/api/service-points/{point['id']}",
        json={"partner_id": 9999, "status": "working", "name": "Moved"},
    )
    assert rejected.status_code == 422
    unchanged = client.get(f"/api/service-points/{point['id']}").json()
    assert unchanged["status"] == "suspended"
    assert unchanged["name"] == "Central Paused"
    assert unchanged["partner_id"] == partner["id"]
