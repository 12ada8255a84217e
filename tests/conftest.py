"""Shared fixtures: in-memory SQLite store, signed webhook client."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from booking_sync import config
from booking_sync import models  # noqa: F401
from booking_sync.database import Base, get_db
from booking_sync.domain.bookings.router import rate_limit_webhook
from booking_sync.main import app
from booking_sync.models import MeetingBooking
from booking_sync.webhook_security import create_webhook_signature

TEST_SECRET = "whsec_test_secret"
WEBHOOK_PATH = "/webhooks/calcom"


def booking_payload(
    uid: str = "ev_1",
    event_type: str = "BOOKING_CREATED",
    email: str | None = "buyer@x.com",
    **booking_fields: Any,
) -> dict:
    """Minimal Cal.com style payload with the booking under ``booking``."""
    booking: dict[str, Any] = {
        "uid": uid,
        "startTime": "2025-01-01T10:00:00Z",
        "endTime": "2025-01-01T10:30:00Z",
    }
    if email is not None:
        booking["attendees"] = [{"email": email}]
    booking.update(booking_fields)
    return {"type": event_type, "booking": booking}


@pytest.fixture
def db_engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory: sessionmaker, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setattr(config, "CALCOM_WEBHOOK_SECRET", TEST_SECRET)
    monkeypatch.setattr(config, "CALCOM_ALWAYS_CREATE", False)

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[rate_limit_webhook] = lambda: None
    # No context manager: the lifespan would create tables in the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def post_webhook(client: TestClient) -> Callable[..., Any]:
    """POST a payload signed with the test secret (bare hex by default)."""

    def _post(
        payload: Any,
        *,
        secret: str = TEST_SECRET,
        header: str = "x-cal-signature-256",
        timestamp: int | None = None,
    ):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        signature = create_webhook_signature(secret, body, timestamp=timestamp)
        return client.post(
            WEBHOOK_PATH,
            content=body,
            headers={header: signature, "content-type": "application/json"},
        )

    return _post


@pytest.fixture
def bookings(db_session: Session) -> Callable[..., list[MeetingBooking]]:
    """Fresh query of persisted bookings, optionally filtered by column values."""

    def _bookings(**filters: Any) -> list[MeetingBooking]:
        db_session.expire_all()
        return db_session.query(MeetingBooking).filter_by(**filters).all()

    return _bookings


@pytest.fixture
def make_payload() -> Callable[..., dict]:
    return booking_payload
