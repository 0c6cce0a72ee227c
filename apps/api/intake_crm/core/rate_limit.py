"""Rate limiting for public provider webhooks."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from intake_crm.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "")
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

# Providers retry aggressively on 429, so the limit is generous and per IP
WEBHOOK_LIMIT = (
    f"{settings.RATE_LIMIT_WEBHOOK}/minute" if settings.RATE_LIMIT_WEBHOOK > 0 else "1000000/minute"
)

if IS_TESTING or not REDIS_URL:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
        enabled=not IS_TESTING,
    )
else:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri=REDIS_URL,
        in_memory_fallback_enabled=True,
    )
    logger.info("Rate limiting backed by %s", REDIS_URL.split("@")[-1])
