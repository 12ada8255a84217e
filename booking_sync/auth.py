import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config
from .webhook_security import constant_time_compare

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def require_service_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Guard internal booking endpoints with a shared bearer token.

    Fails closed: without BOOKINGS_API_TOKEN configured every request is refused.
    """
    expected = config.BOOKINGS_API_TOKEN
    if not expected:
        logger.error("❌ BOOKINGS_API_TOKEN not configured")
        raise HTTPException(status_code=503, detail="Booking lookups are not configured")

    if credentials is None or not constant_time_compare(credentials.credentials, expected):
        logger.warning("🚫 Invalid or missing service token for booking lookup")
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
