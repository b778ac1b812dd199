from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from coachhub.api import deps
from coachhub.api.routes import bookings, internal, lessons, misc, payments, recurring_lessons
from coachhub.config import get_settings
from coachhub.core.security import create_access_token
from coachhub.db import models
from coachhub.db.session import Base, get_db


def auth(user_id: int, role: str) -> dict[str, str]:
    token = create_access_token({"sub": str(user_id), "role": role})
    return {"Authorization": f"Bearer {token}"}


CLIENT = auth(10, "client")
COACH = auth(1, "coach")
ADMIN = auth(99, "admin")
STRANGER = auth(55, "client")


@pytest.fixture()
def api_client(monkeypatch, gateway):
    monkeypatch.setenv("SWEEPER_SECRET", "sweep-secret")
    get_settings.cache_clear()

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    with TestingSessionLocal() as db:
        db.add(models.CoachPaymentAccount(coach_id=1, gateway_account_id="acct_coach_1"))
        db.commit()

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    test_app = FastAPI()
    for module in (bookings, recurring_lessons, lessons, payments, internal, misc):
        test_app.include_router(module.router, prefix="/api/v1")
    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway

    with TestClient(test_app) as client:
        yield client

    test_app.dependency_overrides.clear()
    get_settings.cache_clear()


def session_times(days: int = 3) -> tuple[str, str]:
    start = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=days)
    return start.isoformat(), (start + timedelta(hours=1)).isoformat()


def create_individual(client, times=None, **overrides):
    start, end = times or session_times()
    payload = {
        "coach_id": 1,
        "scheduled_start_at": start,
        "scheduled_end_at": end,
        "price_cents": 12000,
        "location": {"name": "Studio B"},
    }
    payload.update(overrides)
    return client.post("/api/v1/bookings/individual", json=payload, headers=CLIENT)


def test_health(api_client):
    response = api_client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requests_need_a_valid_token(api_client):
    start, end = session_times()
    payload = {"coach_id": 1, "scheduled_start_at": start, "scheduled_end_at": end, "price_cents": 100}

    missing = api_client.post("/api/v1/bookings/individual", json=payload)
    assert missing.status_code == 401

    forged = api_client.post(
        "/api/v1/bookings/individual", json=payload, headers={"Authorization": "Bearer not-a-token"}
    )
    assert forged.status_code == 401


def test_individual_booking_lifecycle(api_client):
    times = session_times()
    created = create_individual(api_client, times)
    assert created.status_code == 201
    body = created.json()
    assert body["created"] is True
    booking_id = body["booking_id"]

    repeat = create_individual(api_client, times)
    assert repeat.status_code == 201
    assert repeat.json() == {**body, "created": False}

    accepted = api_client.post(f"/api/v1/bookings/{booking_id}/accept", json={}, headers=COACH)
    assert accepted.status_code == 200

    view = api_client.get(f"/api/v1/bookings/{booking_id}", headers=CLIENT).json()
    assert view["approval_status"] == "accepted"
    assert view["payment_status"] == "awaiting_client_payment"
    assert view["client_charge_cents"] == 12000
    assert view["location"]["name"] == "Studio B"
    assert view["payment_due_at"] is not None

    paid = api_client.post(f"/api/v1/bookings/{booking_id}/pay", json={}, headers=CLIENT)
    assert paid.status_code == 200
    assert paid.json()["client_secret"]

    ledger_rows = api_client.get(f"/api/v1/bookings/{booking_id}/payments", headers=COACH).json()
    assert [row["kind"] for row in ledger_rows] == ["authorization", "capture"]

    transitions = api_client.get(f"/api/v1/bookings/{booking_id}/transitions", headers=CLIENT).json()
    assert transitions[-1]["field"] == "payment_status"
    assert transitions[-1]["new_value"] == "captured"

    cancelled = api_client.post(
        f"/api/v1/bookings/{booking_id}/cancel", json={"reason": "Injured"}, headers=CLIENT
    )
    assert cancelled.status_code == 200
    view = api_client.get(f"/api/v1/bookings/{booking_id}", headers=COACH).json()
    assert view["approval_status"] == "cancelled"
    assert view["payment_status"] == "refunded"
    assert view["cancellation_reason"] == "Injured"


def test_errors_map_to_http_statuses(api_client):
    booking_id = create_individual(api_client).json()["booking_id"]

    assert api_client.get("/api/v1/bookings/9999", headers=CLIENT).status_code == 404
    assert api_client.get(f"/api/v1/bookings/{booking_id}", headers=STRANGER).status_code == 403

    wrong_role = api_client.post(f"/api/v1/bookings/{booking_id}/accept", json={}, headers=CLIENT)
    assert wrong_role.status_code == 403
    assert wrong_role.json()["detail"]["reason_code"] == "forbidden_role"

    assert api_client.post(f"/api/v1/bookings/{booking_id}/accept", json={}, headers=COACH).status_code == 200
    twice = api_client.post(f"/api/v1/bookings/{booking_id}/accept", json={}, headers=COACH)
    assert twice.status_code == 409
    assert twice.json()["detail"]["code"] == "invalid_transition"

    missing = api_client.post("/api/v1/bookings/9999/pay", json={}, headers=CLIENT)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"


def test_declined_card_is_a_bad_gateway(api_client, gateway):
    booking_id = create_individual(api_client).json()["booking_id"]
    api_client.post(f"/api/v1/bookings/{booking_id}/accept", json={}, headers=COACH)
    gateway.fail_next("create_authorization")

    response = api_client.post(f"/api/v1/bookings/{booking_id}/pay", json={}, headers=CLIENT)

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["code"] == "gateway_error"
    assert "card_declined" not in detail["message"]


def test_refund_is_admin_only(api_client):
    booking_id = create_individual(api_client).json()["booking_id"]

    response = api_client.post(f"/api/v1/bookings/{booking_id}/refund", json={}, headers=CLIENT)
    assert response.status_code == 403

    not_disputed = api_client.post(f"/api/v1/bookings/{booking_id}/refund", json={}, headers=ADMIN)
    assert not_disputed.status_code == 409


def test_dispute_requires_a_reason(api_client):
    booking_id = create_individual(api_client).json()["booking_id"]
    response = api_client.post(f"/api/v1/bookings/{booking_id}/dispute", json={"reason": ""}, headers=CLIENT)
    assert response.status_code == 422


def test_private_group_request(api_client):
    start, end = session_times(days=4)
    response = api_client.post(
        "/api/v1/bookings/private-group",
        json={
            "coach_id": 1,
            "scheduled_start_at": start,
            "scheduled_end_at": end,
            "price_per_person_cents": 2500,
            "invitee_ids": [11, 12, 13],
        },
        headers=CLIENT,
    )
    assert response.status_code == 201
    booking_id = response.json()["booking_id"]

    view = api_client.get(f"/api/v1/bookings/{booking_id}", headers=auth(12, "client")).json()
    assert view["booking_type"] == "private_group"
    assert view["client_charge_cents"] == 10000
    assert sorted(member["user_id"] for member in view["participants"]) == [10, 11, 12, 13]
    assert {member["status"] for member in view["participants"]} == {"requested"}


def test_public_lesson_flow(api_client):
    start, end = session_times(days=6)
    created = api_client.post(
        "/api/v1/lessons",
        json={
            "title": "Footwork basics",
            "scheduled_start_at": start,
            "scheduled_end_at": end,
            "max_participants": 1,
            "price_per_person_cents": 2000,
        },
        headers=COACH,
    )
    assert created.status_code == 201
    lesson_id = created.json()["booking_id"]

    lesson = api_client.get(f"/api/v1/lessons/{lesson_id}")
    assert lesson.status_code == 200
    assert lesson.json()["capacity_status"] == "open"

    joined = api_client.post(f"/api/v1/lessons/{lesson_id}/join", json={}, headers=CLIENT)
    assert joined.status_code == 200
    participant_id = joined.json()["participant_id"]
    assert api_client.get(f"/api/v1/lessons/{lesson_id}").json()["capacity_status"] == "full"

    full = api_client.post(f"/api/v1/lessons/{lesson_id}/join", json={}, headers=STRANGER)
    assert full.status_code == 409
    assert full.json()["detail"]["reason_code"] == "capacity_full"

    admitted = api_client.post(
        f"/api/v1/lessons/{lesson_id}/participants/{participant_id}/accept", headers=COACH
    )
    assert admitted.status_code == 200

    lesson = api_client.get(f"/api/v1/lessons/{lesson_id}").json()
    assert lesson["current_participants"] == 1


def test_recurring_lesson_flow(api_client):
    first_day = datetime.now(timezone.utc).date() + timedelta(days=2)
    payload = {
        "title": "Morning mobility",
        "weekday": first_day.weekday(),
        "start_time": "18:00:00",
        "duration_minutes": 45,
        "max_participants": 6,
        "price_per_person_cents": 1800,
        "starts_on": (first_day - timedelta(days=2)).isoformat(),
        "ends_on": (first_day + timedelta(days=18)).isoformat(),
    }

    forbidden = api_client.post("/api/v1/lessons/recurring", json=payload, headers=CLIENT)
    assert forbidden.status_code == 403

    created = api_client.post("/api/v1/lessons/recurring", json=payload, headers=COACH)
    assert created.status_code == 201
    body = created.json()
    assert len(body["created_booking_ids"]) == 3
    template_id = body["template_id"]

    view = api_client.get(f"/api/v1/lessons/recurring/{template_id}").json()
    assert view["is_active"] is True
    assert view["lesson_ids"] == body["created_booking_ids"]

    edited = api_client.patch(
        f"/api/v1/lessons/recurring/{template_id}", json={"price_per_person_cents": 2200}, headers=COACH
    )
    assert edited.status_code == 200
    assert edited.json()["cancelled_booking_ids"] == body["created_booking_ids"]
    rebuilt = edited.json()["created_booking_ids"]
    assert len(rebuilt) == 3
    assert api_client.get(f"/api/v1/lessons/{rebuilt[0]}").json()["price_per_person_cents"] == 2200

    cancelled = api_client.post(f"/api/v1/lessons/recurring/{template_id}/cancel", json={}, headers=COACH)
    assert cancelled.status_code == 200
    assert cancelled.json()["cancelled_booking_ids"] == rebuilt

    generate = api_client.post(f"/api/v1/lessons/recurring/{template_id}/generate", headers=COACH)
    assert generate.status_code == 409
    assert api_client.get("/api/v1/lessons/recurring/404").status_code == 404


def test_sweep_endpoint_requires_the_shared_secret(api_client):
    assert api_client.post("/api/v1/internal/sweep").status_code == 403
    assert api_client.post("/api/v1/internal/sweep", headers={"X-Sweeper-Secret": "wrong"}).status_code == 403

    response = api_client.post("/api/v1/internal/sweep", headers={"X-Sweeper-Secret": "sweep-secret"})

    assert response.status_code == 200
    assert response.json()["errors"] == 0
    assert set(response.json()) >= {"expired_requests", "expired_bookings", "completed", "locks_cleared"}
