"""Rate limiting for the webhook endpoints."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from replyready.core.config import settings

# Redis-backed for multi-worker deployments; in-memory in tests and dev
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

if IS_TESTING or not settings.REDIS_URL:
    limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
else:
    try:
        import redis

        # Test connection upfront
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        r.ping()
        limiter = Limiter(key_func=get_remote_address, storage_uri=settings.REDIS_URL)
    except Exception as e:
        logging.warning(f"Redis unavailable for rate limiting, using in-memory: {e}")
        limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

WEBHOOK_LIMIT = f"{settings.RATE_LIMIT_WEBHOOK}/minute"
