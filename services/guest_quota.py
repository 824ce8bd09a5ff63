from typing import NamedTuple

import redis

from constants import GUEST_MESSAGE_LIMIT, GUEST_QUOTA_TTL_SECONDS
from logging_config import get_logger
from redis_keys import REDIS_GUEST_QUOTA_KEY
from schemas.rooms import QuotaStatus

logger = get_logger(__name__)


class QuotaDecision(NamedTuple):
    allowed: bool
    count: int


class GuestQuotaTracker:
    """Lifetime message counter per guest, shared by every room.

    Reservation is a single INCR, so concurrent sends from one guest are
    serialized by Redis. An INCR that overshoots the limit is rolled back and
    reported as denied.
    """

    def __init__(self, redis_client: redis.Redis, limit: int = GUEST_MESSAGE_LIMIT,
                 ttl_seconds: int = GUEST_QUOTA_TTL_SECONDS):
        self.redis_client = redis_client
        self.limit = limit
        self.ttl_seconds = ttl_seconds

    def _key(self, guest_id: str) -> str:
        return REDIS_GUEST_QUOTA_KEY.format(guest_id=guest_id)

    def check_and_reserve(self, guest_id: str) -> QuotaDecision:
        key = self._key(guest_id)
        count = self.redis_client.incr(key)
        if count > self.limit:
            self.redis_client.decr(key)
            logger.info(f"Guest {guest_id} denied, message limit {self.limit} reached")
            return QuotaDecision(allowed=False, count=self.limit)
        if self.ttl_seconds:
            self.redis_client.expire(key, self.ttl_seconds)
        logger.debug(f"Guest {guest_id} reserved message {count}/{self.limit}")
        return QuotaDecision(allowed=True, count=count)

    def release(self, guest_id: str) -> int:
        """Give back one reservation whose message was never stored."""
        key = self._key(guest_id)
        count = self.redis_client.decr(key)
        if count < 0:
            self.redis_client.set(key, 0)
            count = 0
        logger.debug(f"Guest {guest_id} released a reservation, count is now {count}")
        return count

    def count(self, guest_id: str) -> int:
        value = int(self.redis_client.get(self._key(guest_id)) or 0)
        # a concurrent denied INCR may be visible until it is rolled back
        return min(value, self.limit)

    def status(self, guest_id: str) -> QuotaStatus:
        sent = self.count(guest_id)
        return QuotaStatus(guest_id=guest_id, sent_count=sent, limit=self.limit, remaining=max(0, self.limit - sent))
