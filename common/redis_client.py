"""
Redis client utilities for event de-duplication
"""
import redis
import logging
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: str = None):
        self.client = redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # Event de-duplication
    def claim_event(self, event_id: str, ttl_seconds: int = 86400) -> bool:
        """Claim an event for processing. Returns False if another worker already has it."""
        key = f"event:{event_id}"
        return bool(self.client.set(key, 1, nx=True, ex=ttl_seconds))

    def release_event(self, event_id: str) -> bool:
        """Drop a claim so a failed event can be processed again"""
        try:
            return bool(self.client.delete(f"event:{event_id}"))
        except redis.RedisError as e:
            logger.warning(f"Failed to release event claim {event_id}: {e}")
            return False

# Global Redis client instance
redis_client = RedisClient()
