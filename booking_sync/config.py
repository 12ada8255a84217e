import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

# Cal.com webhook configuration
# Secret must be present in all environments; requests fail closed without it
CALCOM_WEBHOOK_SECRET = os.getenv("CALCOM_WEBHOOK_SECRET")
# "1" forces create-only ingestion (skips the providerEventId lookup) for troubleshooting
CALCOM_ALWAYS_CREATE = os.getenv("CALCOM_ALWAYS_CREATE", "0") == "1"
BOOKING_PROVIDER = os.getenv("BOOKING_PROVIDER", "cal.com")

# Bearer token for internal booking lookups (GET /bookings/active)
BOOKINGS_API_TOKEN = os.getenv("BOOKINGS_API_TOKEN")

# Webhook rate limiting - global requests per window
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "100"))
WEBHOOK_RATE_WINDOW_SECONDS = int(os.getenv("WEBHOOK_RATE_WINDOW_SECONDS", "60"))

# CORS
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
