"""
Token Blacklist Management
==========================

Redis-backed token blacklist for fast JWT revocation checks.
The `token_blacklist` table is the durable copy; callers check it when
Redis gives no definitive answer.
"""

import time
import logging
from datetime import datetime
from typing import Optional

from redis import Redis

from .config import get_settings

logger = logging.getLogger(__name__)

BLACKLIST_PREFIX = "token:blacklist:"
RECONNECT_BACKOFF_SECONDS = 30

_redis_client: Optional[Redis] = None
_retry_after: float = 0.0


def get_redis_client() -> Optional[Redis]:
    """Get Redis client (singleton), or None while Redis is unreachable."""
    global _redis_client, _retry_after

    if _redis_client is not None:
        return _redis_client
    if time.monotonic() < _retry_after:
        return None

    try:
        client = Redis.from_url(get_settings().redis_url, decode_responses=True, socket_connect_timeout=1)
        client.ping()
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}. Using database fallback.")
        _retry_after = time.monotonic() + RECONNECT_BACKOFF_SECONDS
        return None

    _redis_client = client
    return _redis_client


def add_to_blacklist(jti: str, expires_at: datetime, token_type: str = "access") -> bool:
    """
    Add a token JTI to the blacklist.

    Returns:
        True if stored in Redis, False if only the database copy will exist
    """
    redis = get_redis_client()

    if redis:
        try:
            ttl_seconds = max(int((expires_at - datetime.utcnow()).total_seconds()), 60)
            redis.setex(f"{BLACKLIST_PREFIX}{jti}", ttl_seconds, token_type)
            return True
        except Exception as e:
            logger.warning(f"Redis blacklist add failed: {e}")

    return False


def is_blacklisted(jti: str) -> Optional[bool]:
    """
    Check if a token JTI is blacklisted in Redis.

    Returns True when found, None when the caller must check the database.
    """
    redis = get_redis_client()

    if redis:
        try:
            if redis.exists(f"{BLACKLIST_PREFIX}{jti}"):
                return True
        except Exception as e:
            logger.warning(f"Redis blacklist check failed: {e}")

    return None


def remove_expired_blacklist_entries(db_session) -> int:
    """Delete expired blacklist rows; run daily with the reminder job."""
    from .db.models import TokenBlacklist

    result = db_session.query(TokenBlacklist).filter(
        TokenBlacklist.expires_at < datetime.utcnow()
    ).delete()

    db_session.commit()
    return result
