# marketplace/services/lock_service.py
import redis

from marketplace.utils.retry import redis_retry
from marketplace.utils.settings import REDIS_URL
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

# compare-and-delete in one step, so a lock is only released by its owner
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class LockService:
    """
    Short-lived Redis locks (SET NX EX) and seen-markers for webhook events.
    """

    def __init__(self, url: str | None = None):
        self.redis = redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
        )

    @redis_retry()
    def acquire(self, key: str, owner: str, ttl: int) -> bool:
        logger.info(f"Acquire lock {key} for {owner}")
        return bool(self.redis.set(name=key, value=owner, nx=True, ex=ttl))

    @redis_retry()
    def release(self, key: str, owner: str) -> bool:
        logger.info(f"Release lock {key} for {owner}")
        return bool(self.redis.eval(_RELEASE_LUA, 1, key, owner))

    @redis_retry()
    def is_seen(self, key: str) -> bool:
        return bool(self.redis.exists(key))

    @redis_retry()
    def mark_seen(self, key: str, ttl: int) -> bool:
        """True the first time a key is marked, False on every replay."""
        return bool(self.redis.set(name=key, value="1", nx=True, ex=ttl))


def payout_lock_key(store_id: int) -> str:
    return f"payout:store:{store_id}:lock"


def webhook_event_key(event_id: str) -> str:
    return f"webhook:event:{event_id}"
