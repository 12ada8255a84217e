"""Tests for GET /bookings/active."""

from datetime import datetime

import pytest

from booking_sync import config
from booking_sync.domain.bookings.repository import BookingRepository
from booking_sync.models import BookingStatus

pytestmark = pytest.mark.unit

TOKEN = "svc-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def api(client, monkeypatch):
    monkeypatch.setattr(config, "BOOKINGS_API_TOKEN", TOKEN)
    return client


@pytest.fixture
def seeded(db_session):
    return BookingRepository.create_booking(
        db_session,
        buyer_id="buyer-1",
        buyer_email="buyer@x.com",
        start_time_utc=datetime(2025, 1, 1, 10, 0),
        end_time_utc=datetime(2025, 1, 1, 10, 30),
        provider_event_id="ev_1",
        join_url="https://meet/1",
        status=BookingStatus.BOOKED.value,
    )


def test_unconfigured_token_is_service_unavailable(client, monkeypatch):
    monkeypatch.setattr(config, "BOOKINGS_API_TOKEN", None)

    resp = client.get("/bookings/active", params={"email": "buyer@x.com"}, headers=AUTH)

    assert resp.status_code == 503


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
def test_missing_or_wrong_token_is_unauthorized(api, headers):
    resp = api.get("/bookings/active", params={"email": "buyer@x.com"}, headers=headers)

    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_requires_email_or_buyer_id(api):
    resp = api.get("/bookings/active", headers=AUTH)
    assert resp.status_code == 400


def test_found_by_email(api, seeded):
    resp = api.get("/bookings/active", params={"email": "buyer@x.com"}, headers=AUTH)

    assert resp.status_code == 200
    booking = resp.json()["booking"]
    assert booking["id"] == seeded.id
    assert booking["buyerId"] == "buyer-1"
    assert booking["providerEventId"] == "ev_1"
    assert booking["joinUrl"] == "https://meet/1"
    assert booking["status"] == "BOOKED"
    assert booking["startTimeUtc"].startswith("2025-01-01T10:00:00")


def test_email_lookup_ignores_case(api, seeded):
    resp = api.get("/bookings/active", params={"email": "BUYER@x.com"}, headers=AUTH)
    assert resp.json()["booking"]["id"] == seeded.id


def test_falls_back_to_buyer_id(api, seeded):
    resp = api.get(
        "/bookings/active",
        params={"email": "someone-else@x.com", "buyerId": "buyer-1"},
        headers=AUTH,
    )

    assert resp.status_code == 200
    assert resp.json()["booking"]["id"] == seeded.id


def test_no_active_booking_returns_null(api, seeded, db_session):
    BookingRepository.update_booking(db_session, seeded.id, status=BookingStatus.CANCELED.value)

    resp = api.get("/bookings/active", params={"buyerId": "buyer-1"}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json() == {"booking": None}


def test_booking_created_by_webhook_is_visible(api, post_webhook, make_payload):
    created = post_webhook(make_payload(uid="ev_9", email="new@x.com")).json()

    resp = api.get("/bookings/active", params={"email": "new@x.com"}, headers=AUTH)

    assert resp.json()["booking"]["id"] == created["id"]
    assert resp.json()["booking"]["buyerId"] == "unknown-ev_9"
