from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from api import app, get_db  # noqa: E402
from database import AuditLog  # noqa: E402

MONDAY = datetime.date(2024, 3, 4)


@pytest.fixture()
def client(session_factory):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_schedule_reports_assignments_and_ppo_pairing(client, seed):
    shift = seed.shift_type()
    first = seed.officer("First", rank="PPO")
    second = seed.officer("Second", rank="Probationary")
    seed.partnered_recurring(first, second, shift)

    response = client.get(f"/api/v1/schedule/{MONDAY.isoformat()}/{shift.id}")

    assert response.status_code == 200
    body = response.json()
    assert [item["officer_id"] for item in body["assignments"]] == [first.id, second.id]
    assert body["assignments"][0]["date"] == "2024-03-04"
    assert [issue["kind"] for issue in body["issues"]] == ["PPO_PPO_PAIRING"]


def test_schedule_error_mapping(client, seed):
    shift = seed.shift_type()
    officer = seed.officer("Twice")
    seed.exception(officer, shift, position_name="Desk")
    seed.exception(officer, shift, is_off=True)

    assert client.get(f"/api/v1/schedule/not-a-date/{shift.id}").status_code == 400
    assert client.get(f"/api/v1/schedule/{MONDAY.isoformat()}/999").status_code == 404
    conflict = client.get(f"/api/v1/schedule/{MONDAY.isoformat()}/{shift.id}")
    assert conflict.status_code == 409
    assert len(conflict.json()["detail"]["exception_ids"]) == 2


def test_leave_round_trip_over_http(client, seed):
    shift = seed.shift_type()
    officer = seed.officer("Leave Taker")
    seed.recurring(officer, shift)
    seed.balance(officer, "vacation", 24.0)

    created = client.post(
        "/api/v1/leave",
        json={"officer_id": officer.id, "date": MONDAY.isoformat(), "shift_type_id": shift.id, "pto_type": "vacation"},
    )
    assert created.status_code == 201
    assert created.json()["hours_deducted"] == 8.0
    assert client.get(f"/api/v1/officers/{officer.id}/balances").json()["balances"] == {"vacation": 16.0}

    restored = client.delete(f"/api/v1/leave/{created.json()['exception_id']}")
    assert restored.status_code == 200
    assert restored.json()["hours_restored"] == 8.0
    assert client.get(f"/api/v1/officers/{officer.id}/balances").json()["balances"] == {"vacation": 24.0}
    assert client.get("/api/v1/leave/reconcile").json() == {"ok": True, "mismatches": []}

    assert client.delete(f"/api/v1/leave/{created.json()['exception_id']}").status_code == 404


def test_leave_rejections_map_to_conflict(client, seed):
    shift = seed.shift_type()
    officer = seed.officer("Broke")
    seed.recurring(officer, shift)

    response = client.post(
        "/api/v1/leave",
        json={"officer_id": officer.id, "date": MONDAY.isoformat(), "shift_type_id": shift.id, "pto_type": "sick"},
    )
    assert response.status_code == 409
    assert client.post("/api/v1/leave", json={"officer_id": "x"}).status_code == 400


def test_partnership_endpoints(client, seed):
    shift = seed.shift_type()
    first = seed.officer("First")
    second = seed.officer("Second")
    seed.recurring(first, shift)
    seed.recurring(second, shift)

    created = client.post(
        "/api/v1/partnerships",
        json={
            "officer_id": first.id,
            "partner_officer_id": second.id,
            "date": MONDAY.isoformat(),
            "shift_type_id": shift.id,
            "actor": "sgt",
        },
    )
    assert created.status_code == 201
    assert created.json()["issues"] == []

    removed = client.delete(
        "/api/v1/partnerships",
        params={"officer_id": first.id, "date": MONDAY.isoformat(), "shift_type_id": shift.id},
    )
    assert removed.json()["former_partner_id"] == second.id

    auto = client.post("/api/v1/partnerships/auto-create", json={"date": MONDAY.isoformat()})
    assert auto.json() == {"created": 0, "skipped": 0, "errors": []}


def test_officer_balances_unknown_officer(client):
    assert client.get("/api/v1/officers/42/balances").status_code == 404


def test_shift_types_and_settings(client, seed):
    seed.shift_type(name="Night", start="23:00", end="07:00")

    shifts = client.get("/api/v1/shift-types").json()["shift_types"]
    assert shifts == [{"id": shifts[0]["id"], "name": "Night", "start_time": "23:00", "end_time": "07:00"}]

    assert client.get("/api/v1/settings/active").status_code == 404
    saved = client.put(
        "/api/v1/settings/active",
        json={"name": "Precinct 4", "params": {"allow_ppo_pairs": True}, "actor": "admin"},
    )
    assert saved.status_code == 200
    assert saved.json()["params"]["allow_ppo_pairs"] is True
    assert client.get("/api/v1/settings/active").json()["lastEditedBy"] == "admin"


def test_leave_rejects_non_string_pto_type_and_accepts_numeric_actor(client, session, seed):
    shift = seed.shift_type()
    officer = seed.officer("Numbers")
    seed.recurring(officer, shift)
    seed.balance(officer, "vacation", 24.0)
    body = {"officer_id": officer.id, "date": MONDAY.isoformat(), "shift_type_id": shift.id}

    assert client.post("/api/v1/leave", json={**body, "pto_type": 5}).status_code == 400
    assert client.post("/api/v1/leave", json={**body, "pto_type": "  "}).status_code == 400

    created = client.post("/api/v1/leave", json={**body, "pto_type": "vacation", "actor": 42})
    assert created.status_code == 201
    assert created.json()["hours_deducted"] == 8.0
    audit = session.scalars(select(AuditLog).where(AuditLog.action == "LEAVE_DEDUCT")).one()
    assert audit.user_id == "42"
