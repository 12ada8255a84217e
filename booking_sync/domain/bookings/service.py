"""Booking reconciliation service - Applies provider webhook events to the booking store"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ...config import BOOKING_PROVIDER
from ...models import UNKNOWN_BUYER_PREFIX, BookingStatus, MeetingBooking
from ...shared.validators import is_email_like, parse_instant, utcnow
from .classifier import classify_event_type
from .normalizer import normalize_booking_payload
from .repository import BookingRepository, BookingStoreError
from .schemas import NormalizedBooking

logger = logging.getLogger(__name__)


class BookingValidationError(Exception):
    """Raised when required booking fields are missing or unparseable"""

    pass


class IngestAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE_SKIPPED = "duplicate-skipped"


@dataclass
class ReconcileResult:
    action: IngestAction
    booking_id: Optional[str]
    existing_id: Optional[str] = None


def placeholder_buyer_id(provider_event_id: str) -> str:
    return f"{UNKNOWN_BUYER_PREFIX}{provider_event_id}"


class BookingReconciliationService:
    """
    Service layer for webhook ingestion.

    Every call re-derives state from the store; nothing is cached between
    deliveries. The conflict guard is a read-then-write check without a lock,
    so two different events for the same buyer arriving at the same moment can
    still both pass it.
    """

    def __init__(self, db: Session, always_create: bool = False, provider: str = BOOKING_PROVIDER):
        self.db = db
        self.repo = BookingRepository()
        self.always_create = always_create
        self.provider = provider

    def ingest(self, payload: Any) -> ReconcileResult:
        """Normalize a raw webhook payload and reconcile it against the store"""
        event = normalize_booking_payload(payload)
        status = classify_event_type(event.event_type)
        logger.info(
            f"📥 Booking event {event.event_type or '<none>'} -> {status.value} "
            f"for providerEventId={event.provider_event_id}"
        )
        return self.reconcile(event, status)

    def reconcile(self, event: NormalizedBooking, status: BookingStatus) -> ReconcileResult:
        start, end = self.validate(event)
        provider_event_id = event.provider_event_id

        buyer_id = event.buyer_id or self._recover_buyer_id(event.buyer_email)

        if status == BookingStatus.BOOKED and (buyer_id or event.buyer_email):
            conflict = self._find_active_conflict(buyer_id, event.buyer_email)
            if conflict and conflict.provider_event_id != provider_event_id:
                return self._skip_duplicate(conflict, provider_event_id)

        existing = None
        if self.always_create:
            logger.warning("⚠️ CALCOM_ALWAYS_CREATE enabled - skipping providerEventId lookup")
        else:
            existing = self._find_by_provider_event_id(provider_event_id)

        if existing:
            updated = self._update_existing(existing, event, status, start, end, buyer_id)
            logger.info(f"✅ Updated booking {updated.id} ({status.value})")
            return ReconcileResult(IngestAction.UPDATED, updated.id)

        now = utcnow()
        created = self.repo.create_booking(
            self.db,
            buyer_id=buyer_id or placeholder_buyer_id(provider_event_id),
            buyer_email=event.buyer_email,
            start_time_utc=start,
            end_time_utc=end,
            timezone=event.timezone,
            provider=self.provider,
            provider_event_id=provider_event_id,
            provider_event_type_id=event.provider_event_type_id,
            join_url=event.join_url,
            reschedule_url=event.reschedule_url,
            cancel_url=event.cancel_url,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"✅ Created booking {created.id} for buyer {created.buyer_id} ({status.value})")
        return ReconcileResult(IngestAction.CREATED, created.id)

    @staticmethod
    def validate(event: NormalizedBooking) -> tuple[datetime, datetime]:
        """Check hard-required fields and return (start, end) as naive UTC"""
        if not event.provider_event_id:
            raise BookingValidationError("Missing providerEventId")

        start = parse_instant(event.start_time)
        end = parse_instant(event.end_time)
        if start is None or end is None:
            raise BookingValidationError("Missing or invalid startTime/endTime")
        if end <= start:
            raise BookingValidationError("endTime must be after startTime")
        return start, end

    def get_active_booking(
        self, buyer_email: Optional[str] = None, buyer_id: Optional[str] = None
    ) -> Optional[MeetingBooking]:
        """Most recent BOOKED record for the buyer; email first, then buyer ID"""
        booking = None
        if buyer_email:
            booking = self.repo.find_active_for_email(self.db, buyer_email.strip().lower())
        if booking is None and buyer_id:
            booking = self.repo.find_active_for_buyer(self.db, buyer_id)
        return booking

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    def _recover_buyer_id(self, buyer_email: Optional[str]) -> Optional[str]:
        """
        Adopt the buyer ID from the latest booking with this email.

        The provider sometimes drops custom fields on reschedule; the email is
        then the only link back to the buyer. Placeholder IDs are not adopted.
        """
        if not buyer_email:
            return None
        try:
            previous = self.repo.find_latest_by_email(self.db, buyer_email)
        except BookingStoreError as e:
            logger.warning(f"⚠️ Buyer ID recovery by email failed, continuing without it: {e}")
            return None

        if previous and previous.buyer_id and not previous.has_placeholder_buyer:
            logger.info(f"🔗 Recovered buyerId {previous.buyer_id} from booking {previous.id}")
            return previous.buyer_id
        return None

    def _find_active_conflict(
        self, buyer_id: Optional[str], buyer_email: Optional[str]
    ) -> Optional[MeetingBooking]:
        conflict = None
        if buyer_id:
            conflict = self.repo.find_active_for_buyer(self.db, buyer_id)
        if conflict is None and buyer_email:
            conflict = self.repo.find_active_for_email(self.db, buyer_email)
        return conflict

    def _skip_duplicate(self, conflict: MeetingBooking, provider_event_id: str) -> ReconcileResult:
        if not conflict.provider_event_id:
            try:
                self.repo.update_booking(
                    self.db,
                    conflict.id,
                    provider_event_id=provider_event_id,
                    updated_at=utcnow(),
                )
                logger.info(f"🔧 Backfilled providerEventId {provider_event_id} on booking {conflict.id}")
            except BookingStoreError as e:
                logger.warning(f"⚠️ Could not backfill providerEventId on booking {conflict.id}: {e}")

        logger.info(
            f"🔄 Buyer already has active booking {conflict.id}; "
            f"skipping providerEventId={provider_event_id}"
        )
        return ReconcileResult(IngestAction.DUPLICATE_SKIPPED, conflict.id, existing_id=conflict.id)

    def _find_by_provider_event_id(self, provider_event_id: str) -> Optional[MeetingBooking]:
        """Walk every result page; an early page may be empty"""
        next_token = None
        while True:
            rows, next_token = self.repo.list_bookings(
                self.db, {"provider_event_id": provider_event_id}, next_token=next_token
            )
            if rows:
                return rows[0]
            if not next_token:
                return None

    def _update_existing(
        self,
        existing: MeetingBooking,
        event: NormalizedBooking,
        status: BookingStatus,
        start: datetime,
        end: datetime,
        buyer_id: Optional[str],
    ) -> MeetingBooking:
        # None values are ignored by the repository, so present data is never blanked
        updates = {
            "start_time_utc": start,
            "end_time_utc": end,
            "status": status.value,
            "join_url": event.join_url,
            "timezone": event.timezone,
            "reschedule_url": event.reschedule_url,
            "cancel_url": event.cancel_url,
            "buyer_email": event.buyer_email,
            "updated_at": utcnow(),
        }
        if buyer_id and not is_email_like(buyer_id) and existing.buyer_id != buyer_id:
            logger.info(f"🔧 Backfilling buyerId on booking {existing.id}")
            updates["buyer_id"] = buyer_id

        return self.repo.update_booking(self.db, existing.id, **updates)
