"""Booking domain schemas - Pydantic models for normalized events and responses"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from ...models import MeetingBooking


class NormalizedBooking(BaseModel):
    """
    Canonical booking fields extracted from a provider payload.

    Every field is optional: None means the value could not be resolved,
    which is distinct from an explicitly empty value.
    """

    event_type: Optional[str] = None
    provider_event_id: Optional[str] = None
    # Raw values; parsed and validated by the reconciliation service
    start_time: Optional[Any] = None
    end_time: Optional[Any] = None
    join_url: Optional[str] = None
    timezone: Optional[str] = None
    provider_event_type_id: Optional[str] = None
    reschedule_url: Optional[str] = None
    cancel_url: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_id: Optional[str] = None


class WebhookAckResponse(BaseModel):
    """Response returned to the provider after ingestion"""

    ok: bool = True
    id: Optional[str] = None
    action: str
    existingId: Optional[str] = None


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: str
    buyerId: str
    buyerEmail: Optional[str] = None
    startTimeUtc: datetime
    endTimeUtc: datetime
    timezone: Optional[str] = None
    provider: str
    providerEventId: Optional[str] = None
    providerEventTypeId: Optional[str] = None
    joinUrl: Optional[str] = None
    rescheduleUrl: Optional[str] = None
    cancelUrl: Optional[str] = None
    status: str
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, booking: MeetingBooking) -> "BookingResponse":
        return cls(
            id=booking.id,
            buyerId=booking.buyer_id,
            buyerEmail=booking.buyer_email,
            startTimeUtc=booking.start_time_utc,
            endTimeUtc=booking.end_time_utc,
            timezone=booking.timezone,
            provider=booking.provider,
            providerEventId=booking.provider_event_id,
            providerEventTypeId=booking.provider_event_type_id,
            joinUrl=booking.join_url,
            rescheduleUrl=booking.reschedule_url,
            cancelUrl=booking.cancel_url,
            status=booking.status,
            createdAt=booking.created_at,
            updatedAt=booking.updated_at,
        )


class ActiveBookingResponse(BaseModel):
    booking: Optional[BookingResponse] = None
