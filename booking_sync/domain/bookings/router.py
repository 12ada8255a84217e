"""Booking routers - Cal.com webhook ingestion and internal booking lookups"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ... import config
from ...auth import require_service_token
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...webhook_security import verify_calcom_webhook
from .repository import BookingStoreError
from .schemas import ActiveBookingResponse, BookingResponse, WebhookAckResponse
from .service import BookingReconciliationService, BookingValidationError

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/webhooks/calcom", tags=["calcom-webhooks"])
router = APIRouter(prefix="/bookings", tags=["Bookings"])

rate_limit_webhook = create_rate_limiter(
    limit=config.WEBHOOK_RATE_LIMIT,
    window_seconds=config.WEBHOOK_RATE_WINDOW_SECONDS,
    key_prefix="webhook_calcom",
    use_ip=False,  # Global limit for all webhooks
)


def get_booking_service(db: Session = Depends(get_db)) -> BookingReconciliationService:
    """Dependency injection for BookingReconciliationService"""
    return BookingReconciliationService(db, always_create=config.CALCOM_ALWAYS_CREATE)


def parse_webhook_body(raw_body: bytes) -> Any:
    """Decode the JSON body; an empty or malformed body becomes an empty payload"""
    if not raw_body:
        return {}
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("⚠️ Cal.com webhook body is not valid JSON - treating as empty payload")
        return {}


async def verified_calcom_body(request: Request) -> bytes:
    """
    Raw body of a signed Cal.com delivery.

    Missing secret is a server misconfiguration (500), not an invalid request.
    """
    secret = config.CALCOM_WEBHOOK_SECRET
    if not secret:
        logger.error("❌ CALCOM_WEBHOOK_SECRET not configured - rejecting webhook")
        raise HTTPException(
            status_code=500, detail="Server misconfigured: CALCOM_WEBHOOK_SECRET not set"
        )
    return await verify_calcom_webhook(request, secret)


# ============================================================================
# WEBHOOK INGESTION
# ============================================================================


@webhooks_router.get("")
async def calcom_ping():
    """Health check endpoint for the Cal.com "Ping test" """
    return {"ok": True}


@webhooks_router.post("", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def handle_calcom_webhook(
    # Resolved in order: only signed deliveries count against the rate limit
    raw_body: bytes = Depends(verified_calcom_body),
    _: None = Depends(rate_limit_webhook),
    service: BookingReconciliationService = Depends(get_booking_service),
):
    """
    Handle Cal.com booking webhooks - Rate limited globally
    Supported events: BOOKING_CREATED, BOOKING_RESCHEDULED, BOOKING_CANCELLED (and aliases)

    Security:
    - Signature verification using HMAC-SHA256 (body, or "{t}.{body}")
    - Unsigned requests are rejected before the rate limit is charged
    """
    try:
        payload = parse_webhook_body(raw_body)

        result = service.ingest(payload)

        return WebhookAckResponse(
            ok=True,
            id=result.booking_id,
            action=result.action.value,
            existingId=result.existing_id,
        )

    except HTTPException:
        raise
    except BookingValidationError as e:
        logger.warning(f"⚠️ Rejected Cal.com webhook: {e}")
        raise HTTPException(status_code=400, detail="Missing or invalid required fields") from e
    except BookingStoreError as e:
        logger.error(f"❌ Booking store error during webhook handling: {e}")
        raise HTTPException(status_code=500, detail="Webhook handling failed") from e
    except Exception as e:
        logger.exception("Full webhook error traceback:")
        raise HTTPException(status_code=500, detail="Webhook handling failed") from e


# ============================================================================
# INTERNAL LOOKUPS
# ============================================================================


@router.get(
    "/active",
    response_model=ActiveBookingResponse,
    dependencies=[Depends(require_service_token)],
)
async def get_active_booking(
    email: Optional[str] = Query(None),
    buyer_id: Optional[str] = Query(None, alias="buyerId"),
    service: BookingReconciliationService = Depends(get_booking_service),
):
    """Get the buyer's current BOOKED meeting (by email, falling back to buyer ID)"""
    if not email and not buyer_id:
        raise HTTPException(status_code=400, detail="Provide email or buyerId")

    try:
        booking = service.get_active_booking(buyer_email=email, buyer_id=buyer_id)
    except BookingStoreError as e:
        raise HTTPException(status_code=500, detail="Booking lookup failed") from e

    return ActiveBookingResponse(booking=BookingResponse.from_model(booking) if booking else None)
