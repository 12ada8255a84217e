"""
Booking payload normalizer

Cal.com webhook payloads drift between versions and trigger types: the booking
may sit under data.booking, payload.booking, booking, data, payload or at the
root, and the same field shows up under several names. Each canonical field is
resolved by an ordered chain of extractors; the first acceptable value wins.

Nothing in this module raises on malformed input. Unresolvable fields come
back as None.
"""

import json
import logging
from typing import Any, Callable, Iterable, Optional

from ...shared.validators import is_email_like
from .schemas import NormalizedBooking

logger = logging.getLogger(__name__)

# (booking, payload) -> candidate value
Extractor = Callable[[Any, Any], Any]

# Deep email search limits
DEEP_SEARCH_MAX_DEPTH = 4
DEEP_SEARCH_EXCLUDED_KEYS = frozenset({"organizer"})

# Candidate booking locations, most specific first
BOOKING_LOCATIONS = (
    ("data", "booking"),
    ("payload", "booking"),
    ("booking",),
    ("data",),
    ("payload",),
)


# ============================================================================
# TREE HELPERS
# ============================================================================


def dig(obj: Any, *keys: Any) -> Any:
    """Walk nested dicts/lists; returns None as soon as a step is missing"""
    current = obj
    for key in keys:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def unwrap_response_value(value: Any) -> Any:
    """Cal.com booking responses may be wrapped as {"value": ..., "label": ...}"""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def is_present_scalar(value: Any) -> bool:
    """Non-empty string or non-zero number (booleans are not identifiers)"""
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return value != 0
    return False


def as_text(value: Any) -> Optional[str]:
    if not is_present_scalar(value):
        return None
    return value.strip() if isinstance(value, str) else str(value)


def path(*keys: Any, root: bool = False, unwrap: bool = False) -> Extractor:
    """Extractor reading a key path from the booking object (or the payload root)"""

    def extract(booking: Any, payload: Any) -> Any:
        value = dig(payload if root else booking, *keys)
        return unwrap_response_value(value) if unwrap else value

    return extract


def first_of(
    extractors: Iterable[Extractor],
    booking: Any,
    payload: Any,
    accept: Callable[[Any], bool] = is_present_scalar,
) -> Any:
    for extract in extractors:
        value = extract(booking, payload)
        if accept(value):
            return value
    return None


# ============================================================================
# BOOKING LOCATION AND FIELD ALIASES
# ============================================================================


def locate_booking(payload: Any) -> dict:
    """Return the first non-empty booking object found in the payload"""
    for location in BOOKING_LOCATIONS:
        candidate = dig(payload, *location)
        if isinstance(candidate, dict) and candidate:
            return candidate
    return payload if isinstance(payload, dict) else {}


EVENT_TYPE_CHAIN = (
    path("type", root=True),
    path("event", root=True),
    path("triggerEvent", root=True),
)

# Prefer the booking UID, which is unique per meeting; never the event type ID
PROVIDER_EVENT_ID_CHAIN = (
    path("uid"),
    path("booking", "uid"),
    path("bookingId"),
    path("id"),
    path("reference"),
    path("uuid"),
    path("eventId"),
)

START_TIME_CHAIN = (
    path("startTime"),
    path("start_time"),
    path("start"),
    path("start_time_utc"),
    path("data", "startTime", root=True),
    path("payload", "startTime", root=True),
)

END_TIME_CHAIN = (
    path("endTime"),
    path("end_time"),
    path("end"),
    path("end_time_utc"),
    path("data", "endTime", root=True),
    path("payload", "endTime", root=True),
)

JOIN_URL_CHAIN = (
    path("hangoutLink"),
    path("meetingUrl"),
    path("videoCallUrl"),
    path("join_url"),
    path("metadata", "videoCallUrl"),
)

TIMEZONE_CHAIN = (
    path("timezone"),
    path("timeZone"),
    path("data", "timezone", root=True),
    path("payload", "timezone", root=True),
)

EVENT_TYPE_ID_CHAIN = (
    path("eventTypeId"),
    path("event_type_id"),
)

RESCHEDULE_URL_CHAIN = (path("rescheduleUrl"), path("reschedule_url"))
CANCEL_URL_CHAIN = (path("cancelUrl"), path("cancel_url"))


# ============================================================================
# BUYER EMAIL
# ============================================================================


def first_list_email(list_key: str, fields: tuple[str, ...] = ("email", "emailAddress")) -> Extractor:
    """First entry of booking[list_key] exposing an email-shaped value"""

    def extract(booking: Any, payload: Any) -> Optional[str]:
        entries = dig(booking, list_key)
        if not isinstance(entries, list):
            return None
        for entry in entries:
            for field in fields:
                value = dig(entry, field)
                if is_email_like(value):
                    return value
        return None

    return extract


def deep_find_email(
    obj: Any,
    excluded_keys: frozenset = DEEP_SEARCH_EXCLUDED_KEYS,
    max_depth: int = DEEP_SEARCH_MAX_DEPTH,
) -> Optional[str]:
    """
    Depth-first scan for any key containing "email" with an email-shaped value.

    Uses an explicit stack so adversarially nested payloads cost at most
    max_depth levels. Subtrees under excluded keys (the organizer, i.e. our own
    staff member) are never visited. Visit order matches a recursive pre-order
    walk: each key is checked before descending into its value, and siblings
    are visited in document order.
    """
    # Frames: ("visit", node, depth) or ("check", key, value)
    stack: list[tuple[str, Any, Any]] = [("visit", obj, 0)]

    while stack:
        kind, first, second = stack.pop()

        if kind == "check":
            if "email" in first.lower() and is_email_like(second):
                return second
            continue

        node, depth = first, second
        if depth > max_depth or not isinstance(node, (dict, list)):
            continue

        frames: list[tuple[str, Any, Any]] = []
        if isinstance(node, list):
            frames.extend(("visit", element, depth + 1) for element in node)
        else:
            for key, value in node.items():
                if key in excluded_keys:
                    continue
                frames.append(("check", str(key), value))
                frames.append(("visit", value, depth + 1))
        stack.extend(reversed(frames))

    return None


def deep_email(booking: Any, payload: Any) -> Optional[str]:
    return deep_find_email(booking)


BUYER_EMAIL_CHAIN = (
    # Strong preferences first
    first_list_email("attendees"),
    first_list_email("invitees"),
    path("attendee", "email"),
    path("invitee", "email"),
    path("attendeeEmail"),
    path("responses", "email", unwrap=True),
    path("answers", "email", unwrap=True),
    path("fields", "email", unwrap=True),
    path("email"),
    path("metadata", "buyerEmail"),
    # Last resort; skips the organizer branch
    deep_email,
)


def resolve_buyer_email(booking: Any, payload: Any = None) -> Optional[str]:
    """Buyer email, stripped and lower-cased"""
    email = first_of(BUYER_EMAIL_CHAIN, booking, payload, accept=is_email_like)
    return email.strip().lower() if email else None


# ============================================================================
# BUYER ID
# ============================================================================


def metadata_json_field(field: str) -> Extractor:
    """Read a field from metadata when the provider forwarded it as a JSON string"""

    def extract(booking: Any, payload: Any) -> Any:
        metadata = dig(booking, "metadata")
        if not isinstance(metadata, str):
            return None
        try:
            parsed = json.loads(metadata)
        except ValueError:
            logger.debug("Booking metadata is a string but not valid JSON")
            return None
        return dig(parsed, field)

    return extract


BUYER_ID_CHAIN = (
    path("metadata", "buyerId"),
    path("buyerId"),
    path("custom-buyerId"),
    path("userId"),
    path("attendee", "id"),
    path("invitee", "id"),
    path("attendees", 0, "id"),
    path("invitees", 0, "id"),
    metadata_json_field("buyerId"),
    path("responses", "buyerId", unwrap=True),
    path("answers", "buyerId", unwrap=True),
    path("fields", "buyerId", unwrap=True),
)


def resolve_buyer_id(booking: Any, payload: Any = None) -> Optional[str]:
    """
    Resolve the buyer's opaque ID.

    Buyer identity must never be an email address. When the chain lands on an
    email-shaped value, only an explicit non-email metadata.buyerId is trusted.
    """
    buyer_id = as_text(first_of(BUYER_ID_CHAIN, booking, payload))
    if buyer_id and is_email_like(buyer_id):
        explicit = as_text(dig(booking, "metadata", "buyerId"))
        buyer_id = explicit if explicit and not is_email_like(explicit) else None
    return buyer_id


# ============================================================================
# ENTRY POINT
# ============================================================================


def normalize_booking_payload(payload: Any) -> NormalizedBooking:
    """Extract canonical booking fields from a raw webhook payload"""
    booking = locate_booking(payload)

    def text(chain: Iterable[Extractor]) -> Optional[str]:
        return as_text(first_of(chain, booking, payload))

    normalized = NormalizedBooking(
        event_type=text(EVENT_TYPE_CHAIN),
        provider_event_id=text(PROVIDER_EVENT_ID_CHAIN),
        start_time=first_of(START_TIME_CHAIN, booking, payload),
        end_time=first_of(END_TIME_CHAIN, booking, payload),
        join_url=text(JOIN_URL_CHAIN),
        timezone=text(TIMEZONE_CHAIN),
        provider_event_type_id=text(EVENT_TYPE_ID_CHAIN),
        reschedule_url=text(RESCHEDULE_URL_CHAIN),
        cancel_url=text(CANCEL_URL_CHAIN),
        buyer_email=resolve_buyer_email(booking, payload),
        buyer_id=resolve_buyer_id(booking, payload),
    )

    if not normalized.buyer_email:
        logger.debug(f"No buyer email resolved; booking keys: {list(booking.keys())[:12]}")

    return normalized
