"""
Bookings Domain

Cal.com webhook ingestion and reconciliation of the meeting booking record.

Structure:
- schemas.py     # Normalized event and response schemas
- normalizer.py  # Payload location, field aliases, buyer identity resolution
- classifier.py  # Event type -> booking status
- repository.py  # Booking store operations (paginated list, create, update)
- service.py     # Reconciliation: validation, conflict guard, idempotent upsert
- router.py      # Webhook endpoint and internal lookups
"""

from .router import router, webhooks_router

__all__ = ["router", "webhooks_router"]
