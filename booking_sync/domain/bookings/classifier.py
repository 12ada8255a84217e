"""Maps provider event-type strings to booking statuses"""

from typing import Optional

from ...models import BookingStatus

EVENT_STATUS_MAP: dict[str, BookingStatus] = {
    # Creation / reschedule
    "BOOKING_CREATED": BookingStatus.BOOKED,
    "booking.created": BookingStatus.BOOKED,
    "EVENT_CREATED": BookingStatus.BOOKED,
    "BOOKING_RESCHEDULED": BookingStatus.BOOKED,
    "booking.rescheduled": BookingStatus.BOOKED,
    "invitee.created": BookingStatus.BOOKED,
    # Cancellation
    "BOOKING_CANCELLED": BookingStatus.CANCELED,
    "booking.canceled": BookingStatus.CANCELED,
    "booking.cancelled": BookingStatus.CANCELED,
    "EVENT_CANCELLED": BookingStatus.CANCELED,
    "BOOKING_REJECTED": BookingStatus.CANCELED,
    "invitee.canceled": BookingStatus.CANCELED,
}

_CASE_INSENSITIVE_MAP = {key.lower(): status for key, status in EVENT_STATUS_MAP.items()}


def classify_event_type(event_type: Optional[str]) -> BookingStatus:
    """
    Canonical status for a provider event type.

    Unknown event types count as BOOKED so an event is never silently dropped.
    """
    if not event_type:
        return BookingStatus.BOOKED
    key = event_type.strip()
    status = EVENT_STATUS_MAP.get(key) or _CASE_INSENSITIVE_MAP.get(key.lower())
    return status or BookingStatus.BOOKED
