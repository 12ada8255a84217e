"""
Meeting booking model - the canonical record for one provider booking
"""

import enum
import uuid

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from .database import Base

UNKNOWN_BUYER_PREFIX = "unknown-"


def generate_booking_id():
    """Generate a store-assigned booking ID"""
    return str(uuid.uuid4())


class BookingStatus(str, enum.Enum):
    BOOKED = "BOOKED"
    CANCELED = "CANCELED"
    # Set by downstream jobs, never by webhook ingestion
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class MeetingBooking(Base):
    __tablename__ = "meeting_bookings"

    id = Column(String(36), primary_key=True, default=generate_booking_id)

    # Buyer identity - opaque ID, never an email; "unknown-{providerEventId}" until resolved
    buyer_id = Column(String(255), nullable=False, index=True)
    buyer_email = Column(String(255), nullable=True, index=True)

    # Stored as naive UTC
    start_time_utc = Column(DateTime, nullable=False)
    end_time_utc = Column(DateTime, nullable=False)
    timezone = Column(String(100), nullable=True)

    provider = Column(String(50), nullable=False, default="cal.com")
    # Idempotency anchor for upserts
    provider_event_id = Column(String(255), nullable=True, unique=True, index=True)
    provider_event_type_id = Column(String(255), nullable=True)

    join_url = Column(Text, nullable=True)
    reschedule_url = Column(Text, nullable=True)
    cancel_url = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.BOOKED.value, index=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def has_placeholder_buyer(self) -> bool:
        return (self.buyer_id or "").startswith(UNKNOWN_BUYER_PREFIX)
