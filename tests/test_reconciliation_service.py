"""Tests for the booking reconciliation service against an in-memory store."""

from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from booking_sync.domain.bookings.repository import BookingRepository, BookingStoreError
from booking_sync.domain.bookings.service import (
    BookingReconciliationService,
    BookingValidationError,
    IngestAction,
)
from booking_sync.models import BookingStatus, MeetingBooking
from tests.conftest import booking_payload

pytestmark = pytest.mark.unit


@pytest.fixture
def service(db_session):
    return BookingReconciliationService(db_session)


def _seed(db_session, **fields) -> MeetingBooking:
    data = {
        "buyer_id": "buyer-1",
        "buyer_email": "buyer@x.com",
        "start_time_utc": datetime(2024, 12, 1, 10, 0),
        "end_time_utc": datetime(2024, 12, 1, 10, 30),
        "provider_event_id": "ev_old",
        "status": BookingStatus.BOOKED.value,
    }
    data.update(fields)
    return BookingRepository.create_booking(db_session, **data)


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------


def test_first_event_creates_booking_with_placeholder_buyer(service, bookings):
    result = service.ingest(booking_payload(uid="ev_1", videoCallUrl="https://meet/1"))

    assert result.action == IngestAction.CREATED
    [row] = bookings()
    assert row.id == result.booking_id
    assert row.buyer_id == "unknown-ev_1"
    assert row.has_placeholder_buyer
    assert row.buyer_email == "buyer@x.com"
    assert row.provider == "cal.com"
    assert row.status == "BOOKED"
    assert row.join_url == "https://meet/1"
    assert row.start_time_utc == datetime(2025, 1, 1, 10, 0)
    assert row.end_time_utc == datetime(2025, 1, 1, 10, 30)


def test_explicit_buyer_id_is_stored(service, bookings):
    service.ingest(booking_payload(metadata={"buyerId": "buyer-42"}))
    assert bookings()[0].buyer_id == "buyer-42"


def test_replays_converge_on_last_payload(service, bookings):
    for minute in (0, 15, 30):
        result = service.ingest(
            booking_payload(
                uid="ev_1",
                startTime=f"2025-01-01T11:{minute:02d}:00Z",
                endTime=f"2025-01-01T11:{minute + 20:02d}:00Z",
            )
        )

    rows = bookings(provider_event_id="ev_1")
    assert len(rows) == 1
    assert result.action == IngestAction.UPDATED
    assert rows[0].start_time_utc == datetime(2025, 1, 1, 11, 30)
    assert rows[0].end_time_utc == datetime(2025, 1, 1, 11, 50)


def test_update_keeps_fields_missing_from_later_event(service, bookings):
    service.ingest(booking_payload(uid="ev_1", timeZone="Europe/Berlin", videoCallUrl="https://meet/1"))
    service.ingest(booking_payload(uid="ev_1"))

    [row] = bookings()
    assert row.timezone == "Europe/Berlin"
    assert row.join_url == "https://meet/1"


def test_cancellation_updates_existing_record(service, bookings):
    created = service.ingest(booking_payload(uid="ev_1"))
    canceled = service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))

    assert canceled.action == IngestAction.UPDATED
    assert canceled.booking_id == created.booking_id
    assert bookings()[0].status == "CANCELED"


def test_cancellation_for_unknown_event_creates_canceled_record(service, bookings):
    result = service.ingest(booking_payload(uid="ev_9", event_type="BOOKING_CANCELLED"))

    assert result.action == IngestAction.CREATED
    assert bookings()[0].status == "CANCELED"


def test_update_backfills_placeholder_buyer_id(service, bookings):
    service.ingest(booking_payload(uid="ev_1"))
    service.ingest(booking_payload(uid="ev_1", metadata={"buyerId": "buyer-7"}))

    assert bookings()[0].buyer_id == "buyer-7"


def test_lookup_walks_past_empty_pages(service, db_session, monkeypatch, bookings):
    service.ingest(booking_payload(uid="ev_1"))
    real_list = BookingRepository.list_bookings
    calls = []

    def paged(db, filters, limit=100, next_token=None, newest_first=False):
        if "provider_event_id" in filters and next_token is None:
            calls.append("empty")
            return [], "0"
        calls.append("real")
        return real_list(db, filters, limit=limit, next_token=next_token, newest_first=newest_first)

    monkeypatch.setattr(BookingRepository, "list_bookings", staticmethod(paged))

    result = service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))

    assert result.action == IngestAction.UPDATED
    assert "empty" in calls
    assert len(bookings()) == 1


# ---------------------------------------------------------------------------
# Buyer identity
# ---------------------------------------------------------------------------


def test_buyer_id_recovered_from_previous_booking_by_email(service, db_session, bookings):
    _seed(db_session, buyer_id="buyer-1", status=BookingStatus.CANCELED.value)

    result = service.ingest(booking_payload(uid="ev_new"))

    assert result.action == IngestAction.CREATED
    assert bookings(provider_event_id="ev_new")[0].buyer_id == "buyer-1"


def test_placeholder_buyer_ids_are_not_recovered(service, db_session, bookings):
    _seed(db_session, buyer_id="unknown-ev_old", status=BookingStatus.CANCELED.value)

    service.ingest(booking_payload(uid="ev_new"))

    assert bookings(provider_event_id="ev_new")[0].buyer_id == "unknown-ev_new"


def test_recovery_failure_does_not_block_ingestion(service, monkeypatch, bookings):
    def broken(db, buyer_email):
        raise BookingStoreError("store down")

    monkeypatch.setattr(BookingRepository, "find_latest_by_email", staticmethod(broken))

    result = service.ingest(booking_payload(uid="ev_1"))

    assert result.action == IngestAction.CREATED
    assert bookings()[0].buyer_id == "unknown-ev_1"


# ---------------------------------------------------------------------------
# Conflict guard
# ---------------------------------------------------------------------------


def test_second_active_booking_for_email_is_skipped(service, bookings):
    first = service.ingest(booking_payload(uid="ev_1"))
    second = service.ingest(booking_payload(uid="ev_2"))

    assert second.action == IngestAction.DUPLICATE_SKIPPED
    assert second.existing_id == first.booking_id
    assert second.booking_id == first.booking_id
    assert [row.provider_event_id for row in bookings()] == ["ev_1"]


def test_conflict_detected_by_buyer_id(service, db_session, bookings):
    _seed(db_session, buyer_id="buyer-5", buyer_email="other@x.com", provider_event_id="ev_old")

    result = service.ingest(
        booking_payload(uid="ev_2", email="new@x.com", metadata={"buyerId": "buyer-5"})
    )

    assert result.action == IngestAction.DUPLICATE_SKIPPED
    assert len(bookings()) == 1


def test_conflict_backfills_missing_provider_event_id(service, db_session, bookings):
    seeded = _seed(db_session, provider_event_id=None)

    result = service.ingest(booking_payload(uid="ev_2"))

    assert result.action == IngestAction.DUPLICATE_SKIPPED
    assert result.existing_id == seeded.id
    [row] = bookings()
    assert row.provider_event_id == "ev_2"


def test_backfill_failure_still_skips(service, db_session, monkeypatch, bookings):
    _seed(db_session, provider_event_id=None)

    def broken(db, booking_id, **updates):
        raise BookingStoreError("write failed")

    monkeypatch.setattr(BookingRepository, "update_booking", staticmethod(broken))

    result = service.ingest(booking_payload(uid="ev_2"))

    assert result.action == IngestAction.DUPLICATE_SKIPPED
    assert bookings()[0].provider_event_id is None


def test_rebooking_allowed_after_cancellation(service, bookings):
    service.ingest(booking_payload(uid="ev_1"))
    service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))
    result = service.ingest(booking_payload(uid="ev_2"))

    assert result.action == IngestAction.CREATED
    assert len(bookings(status="BOOKED")) == 1


def test_cancellation_bypasses_conflict_guard(service, bookings):
    service.ingest(booking_payload(uid="ev_1"))
    result = service.ingest(booking_payload(uid="ev_2", event_type="BOOKING_CANCELLED"))

    assert result.action == IngestAction.CREATED
    assert len(bookings()) == 2


def test_conflict_query_failure_propagates(service, monkeypatch):
    def broken(db, buyer_email):
        raise BookingStoreError("store down")

    monkeypatch.setattr(BookingRepository, "find_active_for_email", staticmethod(broken))

    with pytest.raises(BookingStoreError):
        service.ingest(booking_payload(uid="ev_1"))


# ---------------------------------------------------------------------------
# Always-create mode
# ---------------------------------------------------------------------------


def test_always_create_skips_provider_event_lookup(db_session, monkeypatch, bookings):
    service = BookingReconciliationService(db_session, always_create=True)

    def fail_lookup(self, provider_event_id):
        raise AssertionError("lookup should be skipped")

    monkeypatch.setattr(BookingReconciliationService, "_find_by_provider_event_id", fail_lookup)

    result = service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))

    assert result.action == IngestAction.CREATED
    assert len(bookings()) == 1


def test_always_create_with_existing_id_is_a_store_error(db_session, bookings):
    service = BookingReconciliationService(db_session, always_create=True)
    service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))

    with pytest.raises(BookingStoreError):
        service.ingest(booking_payload(uid="ev_1", event_type="BOOKING_CANCELLED"))

    assert len(bookings()) == 1


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides",
    [
        {"uid": None},
        {"startTime": None},
        {"endTime": "not a date"},
        {"endTime": "2025-01-01T10:00:00Z"},
        {"endTime": "2025-01-01T09:00:00Z"},
    ],
    ids=["no-id", "no-start", "bad-end", "zero-length", "end-before-start"],
)
def test_invalid_events_write_nothing(service, bookings, overrides):
    payload = booking_payload()
    payload["booking"].update(overrides)

    with pytest.raises(BookingValidationError):
        service.ingest(payload)

    assert bookings() == []


def test_store_failure_on_create_is_reported(service, db_session, monkeypatch):
    def failing_commit():
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(BookingStoreError):
        service.ingest(booking_payload(uid="ev_1"))


# ---------------------------------------------------------------------------
# Active booking lookup
# ---------------------------------------------------------------------------


def test_active_booking_by_email_then_buyer_id(service, db_session):
    seeded = _seed(db_session, buyer_id="buyer-3", buyer_email="buyer@x.com")

    assert service.get_active_booking(buyer_email="buyer@x.com").id == seeded.id
    assert service.get_active_booking(buyer_email="nobody@x.com", buyer_id="buyer-3").id == seeded.id
    assert service.get_active_booking(buyer_email="nobody@x.com") is None


def test_canceled_bookings_are_not_active(service, db_session):
    _seed(db_session, status=BookingStatus.CANCELED.value)
    assert service.get_active_booking(buyer_email="buyer@x.com", buyer_id="buyer-1") is None
