"""Booking repository - Database operations for meeting bookings"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import BookingStatus, MeetingBooking

logger = logging.getLogger(__name__)

FILTERABLE_FIELDS = {"buyer_id", "buyer_email", "status", "provider_event_id"}


class BookingStoreError(Exception):
    """Raised when the booking store fails; the session has been rolled back"""

    pass


def _decode_token(next_token: Optional[str]) -> int:
    if not next_token:
        return 0
    try:
        return max(int(next_token), 0)
    except ValueError:
        return 0


class BookingRepository:
    """Repository for meeting booking database operations"""

    DEFAULT_PAGE_SIZE = 100

    @staticmethod
    def list_bookings(
        db: Session,
        filters: dict[str, Any],
        limit: int = DEFAULT_PAGE_SIZE,
        next_token: Optional[str] = None,
        newest_first: bool = False,
    ) -> tuple[list[MeetingBooking], Optional[str]]:
        """
        List bookings matching equality filters, one page at a time.

        Returns (records, next_token); next_token is None on the last page.
        Callers must not assume a match lands on the first page.
        """
        unknown = set(filters) - FILTERABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported booking filters: {sorted(unknown)}")

        offset = _decode_token(next_token)
        try:
            query = db.query(MeetingBooking).filter_by(**filters)
            if newest_first:
                query = query.order_by(MeetingBooking.created_at.desc(), MeetingBooking.id)
            else:
                query = query.order_by(MeetingBooking.id)
            rows = query.offset(offset).limit(limit + 1).all()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Booking list failed for filters {filters}: {e}")
            raise BookingStoreError("Booking lookup failed") from e

        if len(rows) > limit:
            return rows[:limit], str(offset + limit)
        return rows, None

    @staticmethod
    def get_booking(db: Session, booking_id: str) -> Optional[MeetingBooking]:
        """Get a booking by store ID"""
        try:
            return db.query(MeetingBooking).filter(MeetingBooking.id == booking_id).first()
        except SQLAlchemyError as e:
            db.rollback()
            raise BookingStoreError("Booking lookup failed") from e

    @staticmethod
    def create_booking(db: Session, **booking_data) -> MeetingBooking:
        """Create a new booking"""
        booking = MeetingBooking(**booking_data)
        try:
            db.add(booking)
            db.commit()
            db.refresh(booking)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to create booking: {e}")
            raise BookingStoreError("Booking create failed") from e
        return booking

    @staticmethod
    def update_booking(db: Session, booking_id: str, **updates) -> MeetingBooking:
        """Update a booking with provided fields; None values are ignored"""
        booking = BookingRepository.get_booking(db, booking_id)
        if booking is None:
            raise BookingStoreError(f"Booking {booking_id} not found")

        for key, value in updates.items():
            if value is not None and hasattr(booking, key):
                setattr(booking, key, value)

        try:
            db.commit()
            db.refresh(booking)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to update booking {booking_id}: {e}")
            raise BookingStoreError("Booking update failed") from e
        return booking

    # Identity and conflict lookups
    @staticmethod
    def find_latest_by_email(db: Session, buyer_email: str) -> Optional[MeetingBooking]:
        rows, _ = BookingRepository.list_bookings(
            db, {"buyer_email": buyer_email}, limit=1, newest_first=True
        )
        return rows[0] if rows else None

    @staticmethod
    def find_active_for_buyer(db: Session, buyer_id: str) -> Optional[MeetingBooking]:
        rows, _ = BookingRepository.list_bookings(
            db,
            {"buyer_id": buyer_id, "status": BookingStatus.BOOKED.value},
            limit=1,
            newest_first=True,
        )
        return rows[0] if rows else None

    @staticmethod
    def find_active_for_email(db: Session, buyer_email: str) -> Optional[MeetingBooking]:
        rows, _ = BookingRepository.list_bookings(
            db,
            {"buyer_email": buyer_email, "status": BookingStatus.BOOKED.value},
            limit=1,
            newest_first=True,
        )
        return rows[0] if rows else None
