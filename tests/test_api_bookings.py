from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from servicebook.api import get_db, router
from servicebook.db import Base

MONDAY = "2030-01-07"


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


def _seed_slots(client):
    partner = client.post(
        "/api/partners",
        json={"email": "owner@tyremasters.com", "company_name": "Tyre Masters", "phone": "+380501112233"},
    ).json()
    point = client.post(
        "/api/service-points",
        json={
            "partner_id": partner["id"],
            "name": "Central",
            "working_hours": {"monday": {"open": "09:00", "close": "12:00"}},
            "service_posts": [
                {"name": "Post 1", "service_time_minutes": 60, "start": "09:00", "end": "12:00"},
            ],
        },
    ).json()
    generated = client.post(
        f"/api/service-points/{point['id']}/schedule",
        json={"date": MONDAY, "post_number": 1},
    )
    assert generated.status_code == 201
    return point, generated.json()["created"]


def _booking_payload(schedule_id, **overrides):
    payload = {
        "schedule_id": schedule_id,
        "full_name": "Olena Koval",
        "phone": "+380671234567",
        "car_number": "aa1234bb",
        "vehicle_brand": "Skoda",
    }
    payload.update(overrides)
    return payload


def _schedule_status(client, schedule_id):
    return client.get(f"/api/schedules/{schedule_id}").json()["status"]


def test_create_booking_reserves_slot(tmp_path):
    client = make_client(tmp_path)
    point, slots = _seed_slots(client)

    created = client.post(
        "/api/bookings",
        json=_booking_payload(slots[0]["id"], service_point_id=point["id"]),
        headers={"X-Actor-Email": "manager@tyremasters.com"},
    )
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["status"] == "confirmed"
    assert body["service_point_id"] == point["id"]
    assert body["car_number"] == "AA1234BB"
    assert body["vehicle_type"] == "passenger"
    assert body["date"] == MONDAY
    assert body["time"] == "09:00"
    assert body["time_slot"] == "09:00 - 10:00"
    assert body["schedule_status"] == "booked"
    assert _schedule_status(client, slots[0]["id"]) == "booked"

    history = client.get(f"/api/bookings/{body['id']}/history")
    assert history.status_code == 200
    rows = history.json()
    assert len(rows) == 1
    assert rows[0]["from_status"] is None
    assert rows[0]["to_status"] == "confirmed"
    assert rows[0]["action"] == "created"
    assert rows[0]["actor"] == "manager@tyremasters.com"


def test_slot_cannot_be_booked_twice(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)

    first = client.post("/api/bookings", json=_booking_payload(slots[0]["id"]))
    assert first.status_code == 201

    second = client.post("/api/bookings", json=_booking_payload(slots[0]["id"], full_name="Someone Else"))
    assert second.status_code == 422
    assert second.json()["detail"] == "Schedule is not available for booking"

    listed = client.get("/api/bookings")
    assert len(listed.json()) == 1


def test_create_booking_validation(tmp_path):
    client = make_client(tmp_path)
    point, slots = _seed_slots(client)

    missing_slot = client.post("/api/bookings", json=_booking_payload(9999))
    assert missing_slot.status_code == 422

    wrong_point = client.post("/api/bookings", json=_booking_payload(slots[0]["id"], service_point_id=point["id"] + 1))
    assert wrong_point.status_code == 422
    assert _schedule_status(client, slots[0]["id"]) == "available"

    bad_status = client.post("/api/bookings", json=_booking_payload(slots[0]["id"], status="maybe"))
    assert bad_status.status_code == 422

    unknown_client = client.post("/api/bookings", json=_booking_payload(slots[0]["id"], client_id=777))
    assert unknown_client.status_code == 422
    assert _schedule_status(client, slots[0]["id"]) == "available"


def test_idempotency_key_replays_booking(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    headers = {"Idempotency-Key": "booking-abc-1"}

    first = client.post("/api/bookings", json=_booking_payload(slots[0]["id"]), headers=headers)
    second = client.post("/api/bookings", json=_booking_payload(slots[0]["id"]), headers=headers)
    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert len(client.get("/api/bookings").json()) == 1


def test_booking_status_changes_sync_schedule(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    slot_id = slots[0]["id"]
    booking = client.post("/api/bookings", json=_booking_payload(slot_id, status="pending")).json()
    assert _schedule_status(client, slot_id) == "booked"

    confirmed = client.patch(f"/api/bookings/{booking['id']}", json={"status": "confirmed"})
    assert confirmed.status_code == 200
    assert _schedule_status(client, slot_id) == "booked"

    cancelled = client.patch(
        f"/api/bookings/{booking['id']}",
        json={"status": "cancelled"},
        headers={"X-Actor-Email": "desk@tyremasters.com"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert _schedule_status(client, slot_id) == "available"

    reactivated = client.put(f"/api/bookings/{booking['id']}", json={"status": "confirmed"})
    assert reactivated.status_code == 200
    assert _schedule_status(client, slot_id) == "booked"

    completed = client.patch(f"/api/bookings/{booking['id']}", json={"status": "completed"})
    assert completed.status_code == 200
    assert _schedule_status(client, slot_id) == "completed"

    terminal = client.patch(f"/api/bookings/{booking['id']}", json={"status": "pending"})
    assert terminal.status_code == 422
    assert "completed -> pending" in terminal.json()["detail"]

    history = client.get(f"/api/bookings/{booking['id']}/history").json()
    assert [(row["from_status"], row["to_status"]) for row in history] == [
        (None, "pending"),
        ("pending", "confirmed"),
        ("confirmed", "cancelled"),
        ("cancelled", "confirmed"),
        ("confirmed", "completed"),
    ]
    assert history[2]["actor"] == "desk@tyremasters.com"


def test_reactivating_booking_fails_when_slot_was_taken(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    slot_id = slots[0]["id"]

    first = client.post("/api/bookings", json=_booking_payload(slot_id)).json()
    client.patch(f"/api/bookings/{first['id']}", json={"status": "cancelled"})
    second = client.post("/api/bookings", json=_booking_payload(slot_id, full_name="Second Client"))
    assert second.status_code == 201

    retry = client.patch(f"/api/bookings/{first['id']}", json={"status": "confirmed"})
    assert retry.status_code == 422
    assert client.get(f"/api/bookings/{first['id']}").json()["status"] == "cancelled"

    # deleting the cancelled booking leaves the other client's slot alone
    assert client.delete(f"/api/bookings/{first['id']}").status_code == 204
    assert _schedule_status(client, slot_id) == "booked"


def test_move_booking_to_another_slot(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    booking = client.post("/api/bookings", json=_booking_payload(slots[0]["id"])).json()
    blocker = client.post("/api/bookings", json=_booking_payload(slots[2]["id"], full_name="Blocker"))
    assert blocker.status_code == 201

    moved = client.patch(
        f"/api/bookings/{booking['id']}",
        json={"schedule_id": slots[1]["id"], "notes": "Moved by phone"},
    )
    assert moved.status_code == 200, moved.text
    assert moved.json()["schedule_id"] == slots[1]["id"]
    assert moved.json()["time_slot"] == "10:00 - 11:00"
    assert moved.json()["notes"] == "Moved by phone"
    assert _schedule_status(client, slots[0]["id"]) == "available"
    assert _schedule_status(client, slots[1]["id"]) == "booked"

    clash = client.patch(f"/api/bookings/{booking['id']}", json={"schedule_id": slots[2]["id"]})
    assert clash.status_code == 422
    assert client.get(f"/api/bookings/{booking['id']}").json()["schedule_id"] == slots[1]["id"]
    assert _schedule_status(client, slots[1]["id"]) == "booked"


def test_schedule_transitions_move_active_booking(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    booking = client.post("/api/bookings", json=_booking_payload(slots[0]["id"])).json()

    done = client.post(f"/api/schedules/{slots[0]['id']}/complete")
    assert done.status_code == 200
    assert client.get(f"/api/bookings/{booking['id']}").json()["status"] == "completed"

    other = client.post("/api/bookings", json=_booking_payload(slots[1]["id"])).json()
    cancelled = client.post(f"/api/schedules/{slots[1]['id']}/cancel")
    assert cancelled.status_code == 200
    assert client.get(f"/api/bookings/{other['id']}").json()["status"] == "cancelled"

    history = client.get(f"/api/bookings/{other['id']}/history").json()
    assert history[-1]["action"] == "schedule_cancel"


def test_delete_booking_releases_slot(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    booking = client.post("/api/bookings", json=_booking_payload(slots[0]["id"])).json()

    assert client.delete(f"/api/schedules/{slots[0]['id']}").status_code == 422

    assert client.delete(f"/api/bookings/{booking['id']}").status_code == 204
    assert _schedule_status(client, slots[0]["id"]) == "available"
    assert client.get(f"/api/bookings/{booking['id']}").status_code == 404
    assert client.get(f"/api/bookings/{booking['id']}/history").status_code == 404
    assert client.delete(f"/api/bookings/{booking['id']}").status_code == 404


def test_delete_completed_booking_keeps_slot_completed(tmp_path):
    client = make_client(tmp_path)
    _, slots = _seed_slots(client)
    slot_id = slots[0]["id"]
    booking = client.post("/api/bookings", json=_booking_payload(slot_id)).json()
    assert client.patch(f"/api/bookings/{booking['id']}", json={"status": "completed"}).status_code == 200
    assert _schedule_status(client, slot_id) == "completed"

    assert client.delete(f"/api/bookings/{booking['id']}").status_code == 204
    assert _schedule_status(client, slot_id) == "completed"
    assert client.post(f"/api/schedules/{slot_id}/book").status_code == 422


def test_list_bookings_filters(tmp_path):
    client = make_client(tmp_path)
    point, slots = _seed_slots(client)
    first = client.post("/api/bookings", json=_booking_payload(slots[1]["id"])).json()
    second = client.post("/api/bookings", json=_booking_payload(slots[0]["id"], status="pending")).json()

    everything = client.get("/api/bookings", params={"service_point_id": point["id"], "date": MONDAY})
    assert [b["id"] for b in everything.json()] == [second["id"], first["id"]]

    pending = client.get("/api/bookings", params={"status": "pending"})
    assert [b["id"] for b in pending.json()] == [second["id"]]

    other_day = client.get("/api/bookings", params={"date": "2030-01-08"})
    assert other_day.json() == []
