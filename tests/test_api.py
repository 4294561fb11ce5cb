from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import at


def _iso(value) -> str:
    return value.isoformat()


@pytest.fixture
def client(settings, clock, dispatcher):
    app = create_app(settings=settings, clock=clock, dispatcher=dispatcher)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def room_id(client) -> str:
    response = client.post(
        "/rooms",
        json={
            "name": "Boardroom",
            "capacity": 10,
            "timezone": "UTC",
            "buffer_minutes": 15,
            "min_duration_minutes": 15,
            "max_bookings_per_user_per_day": None,
            "max_bookings_per_user_per_week": None,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["room_id"]


def _create_booking(client, room_id: str, start, end, user_id: str = "alice"):
    return client.post(
        "/bookings",
        json={
            "room_id": room_id,
            "user_id": user_id,
            "title": "Planning",
            "start_time": _iso(start),
            "end_time": _iso(end),
        },
    )


def _confirmed_booking(client, room_id: str, start, end) -> str:
    created = _create_booking(client, room_id, start, end)
    assert created.status_code == 201, created.text
    booking_id = created.json()["booking_id"]
    assert client.post(f"/bookings/{booking_id}/approve").status_code == 200
    return booking_id


def test_room_policy_round_trip(client, room_id) -> None:
    fetched = client.get(f"/rooms/{room_id}").json()
    assert fetched["max_bookings_per_user_per_day"] is None
    assert fetched["operating_hours"]["saturday"]["enabled"] is False

    updated = client.put(f"/rooms/{room_id}/policy", json={"buffer_minutes": 0})

    assert updated.status_code == 200
    assert updated.json()["buffer_minutes"] == 0
    assert updated.json()["name"] == "Boardroom"


def test_invalid_policy_is_rejected(client, room_id) -> None:
    response = client.put(f"/rooms/{room_id}/policy", json={"min_duration_minutes": 120, "max_duration_minutes": 60})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_policy"


def test_unknown_room_is_404(client) -> None:
    response = client.get("/rooms/missing")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "room_not_found"


def test_availability_and_slots(client, room_id) -> None:
    _confirmed_booking(client, room_id, at(10, 0), at(11, 0))

    busy = client.get(
        f"/rooms/{room_id}/availability",
        params={"start": _iso(at(11, 0)), "end": _iso(at(11, 30))},
    )
    free = client.get(
        f"/rooms/{room_id}/availability",
        params={"start": _iso(at(11, 15)), "end": _iso(at(11, 45))},
    )
    slots = client.get(f"/rooms/{room_id}/slots", params={"date": "2030-01-07", "duration_minutes": 60})

    assert busy.json()["bookable"] is False
    assert busy.json()["reason"] == "booking_conflict"
    assert free.json()["bookable"] is True
    assert slots.status_code == 200
    assert len(slots.json()["slots"]) == 19


def test_blackout_lifecycle(client, room_id) -> None:
    created = client.post(
        f"/rooms/{room_id}/blackouts",
        json={
            "title": "HVAC service",
            "start_time": _iso(at(14, 0)),
            "end_time": _iso(at(16, 0)),
            "blackout_type": "maintenance",
        },
    )
    assert created.status_code == 201
    blackout_id = created.json()["blackout_id"]

    blocked = _create_booking(client, room_id, at(15, 0), at(15, 30))
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["code"] == "blackout"

    patched = client.patch(f"/blackouts/{blackout_id}", json={"is_active": False})
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False

    assert client.delete(f"/blackouts/{blackout_id}").status_code == 204
    assert client.delete(f"/blackouts/{blackout_id}").status_code == 404


def test_booking_validation_errors(client, room_id) -> None:
    too_short = _create_booking(client, room_id, at(10, 0), at(10, 10))
    naive = client.post(
        "/bookings",
        json={
            "room_id": room_id,
            "user_id": "alice",
            "title": "Naive",
            "start_time": "2030-01-07T10:00:00",
            "end_time": "2030-01-07T11:00:00",
        },
    )

    assert too_short.status_code == 400
    assert too_short.json()["detail"]["code"] == "duration_too_short"
    assert naive.status_code == 422


def test_booking_lifecycle_over_http(client, clock, room_id) -> None:
    booking_id = _confirmed_booking(client, room_id, at(9, 0), at(10, 0))

    fetched = client.get(f"/bookings/{booking_id}").json()
    assert fetched["lifecycle_state"] == "confirmed"

    clock.set(at(8, 40))
    early = client.post(f"/bookings/{booking_id}/check-in")
    assert early.status_code == 409
    assert early.json()["detail"]["code"] == "window_not_open_yet"

    clock.set(at(8, 50))
    status_body = client.get(f"/bookings/{booking_id}/check-in").json()
    assert status_body["can_check_in"] is True

    first = client.post(f"/bookings/{booking_id}/check-in", json={"acting_user_id": "alice"})
    second = client.post(f"/bookings/{booking_id}/check-in")
    assert first.json()["already_checked_in"] is False
    assert second.json()["already_checked_in"] is True

    cancel = client.post(f"/bookings/{booking_id}/cancel", json={"reason": "done"})
    assert cancel.status_code == 409
    assert cancel.json()["detail"]["code"] == "already_checked_in"


def test_reject_and_cancel(client, room_id) -> None:
    created = _create_booking(client, room_id, at(9, 0), at(10, 0)).json()
    rejected = client.post(f"/bookings/{created['booking_id']}/reject", json={"reason": "reserved"})

    assert rejected.json()["status"] == "cancelled"
    assert rejected.json()["rejection_reason"] == "reserved"
    assert client.post(f"/bookings/{created['booking_id']}/approve").json()["detail"]["code"] == "not_pending"

    other_id = _confirmed_booking(client, room_id, at(11, 0), at(12, 0))
    cancelled = client.post(f"/bookings/{other_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["lifecycle_state"] == "cancelled"


def test_cron_sweep_releases_overdue_booking(client, clock, room_id) -> None:
    booking_id = _confirmed_booking(client, room_id, at(9, 0), at(10, 0))
    clock.set(at(9, 16))

    sweep = client.post("/cron/auto-release")

    assert sweep.status_code == 200
    assert sweep.json()["released"] == 1
    assert client.get(f"/bookings/{booking_id}").json()["lifecycle_state"] == "auto_released"

    again = client.post(f"/bookings/{booking_id}/auto-release")
    assert again.json()["already_released"] is True

    clock.set(at(9, 17))
    assert _create_booking(client, room_id, at(9, 17), at(10, 0), user_id="bob").status_code == 201


def test_cron_expires_unapproved_requests(client, clock, room_id) -> None:
    booking_id = _create_booking(client, room_id, at(10, 0), at(11, 0)).json()["booking_id"]
    clock.set(at(10, 5))

    approve = client.post(f"/bookings/{booking_id}/approve")
    expired = client.post("/cron/expire-pending")

    assert approve.status_code == 409
    assert approve.json()["detail"]["code"] == "window_expired"
    assert expired.status_code == 200
    assert expired.json()["expired"] == 1
    assert expired.json()["bookings"][0]["booking_id"] == booking_id
    assert expired.json()["bookings"][0]["status"] == "cancelled"
    assert client.post("/cron/expire-pending").json()["expired"] == 0


def test_cron_endpoints_require_secret_when_configured(settings, clock, dispatcher) -> None:
    app = create_app(settings=replace(settings, cron_secret="s3cret"), clock=clock, dispatcher=dispatcher)
    with TestClient(app) as client:
        missing = client.post("/cron/auto-release")
        wrong = client.post("/cron/auto-release", headers={"Authorization": "Bearer nope"})
        right = client.post("/cron/auto-release", headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["detail"]["code"] == "unauthorized"
    assert right.status_code == 200
    assert right.json()["processed"] == 0


def test_attendance_flow_over_http(client, clock, dispatcher, room_id) -> None:
    booking_id = _confirmed_booking(client, room_id, at(9, 0), at(10, 0))
    clock.set(at(9, 2))
    assert client.post(f"/bookings/{booking_id}/check-in").status_code == 200

    invitation = client.post(
        f"/meetings/{booking_id}/invitations",
        json={"email": "Dana@example.com", "name": "Dana"},
    )
    assert invitation.status_code == 201
    invitation_id = invitation.json()["invitation_id"]

    qr = client.post(
        f"/meetings/{booking_id}/qr",
        headers={"User-Agent": "Lobby kiosk", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert qr.status_code == 200
    token = qr.json()["token"]

    sent = client.post(f"/meetings/{booking_id}/attendance/send-code", json={"invitation_id": invitation_id})
    assert sent.status_code == 200
    assert "code" not in sent.json()
    code = [payload for name, payload in dispatcher.events if name == "attendance_code"][-1]["code"]

    resent = client.post(f"/meetings/{booking_id}/attendance/send-code", json={"invitation_id": invitation_id})
    assert resent.status_code == 429

    malformed = client.post(
        f"/meetings/{booking_id}/attendance/verify",
        json={"invitation_id": invitation_id, "code": "12ab"},
    )
    assert malformed.status_code == 400

    verified = client.post(
        f"/meetings/{booking_id}/attendance/verify",
        json={"invitation_id": invitation_id, "code": code, "token": token},
    )
    assert verified.status_code == 200
    assert verified.json()["occupancy"]["present"] == 1

    occupancy = client.get(f"/meetings/{booking_id}/occupancy").json()
    assert occupancy == {"booking_id": booking_id, "present": 1, "invited": 1, "capacity": 10, "percentage": 10}

    roster = client.get(f"/meetings/{booking_id}/attendance/attendees", params={"t": token})
    assert roster.status_code == 200
    assert roster.json()[0]["display_name"] == "Dana"
    assert "email" not in roster.json()[0]

    forbidden = client.get(f"/meetings/{booking_id}/attendance/attendees", params={"t": "bogus"})
    assert forbidden.status_code == 400


def test_too_many_attempts_is_429(client, clock, room_id) -> None:
    booking_id = _confirmed_booking(client, room_id, at(9, 0), at(10, 0))
    clock.set(at(9, 2))
    client.post(f"/bookings/{booking_id}/check-in")
    invitation_id = client.post(
        f"/meetings/{booking_id}/invitations",
        json={"email": "dana@example.com"},
    ).json()["invitation_id"]

    for _ in range(5):
        client.post(
            f"/meetings/{booking_id}/attendance/verify",
            json={"invitation_id": invitation_id, "code": "1234"},
        )
    throttled = client.post(
        f"/meetings/{booking_id}/attendance/verify",
        json={"invitation_id": invitation_id, "code": "1234"},
    )

    assert throttled.status_code == 429
    assert throttled.json()["detail"]["code"] == "too_many_attempts"
