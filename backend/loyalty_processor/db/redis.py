"""Redis client construction and the shared job-start rate limiter"""
import logging
import time

import redis

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "ratelimit:"


def create_redis_client(url: str) -> redis.Redis:
    """Create a Redis client; no connection is made until the first command"""
    return redis.from_url(url, decode_responses=True)


class RateLimiter:
    """Fixed-window limiter stored in Redis so every worker process shares one limit.

    Each window gets its own counter key (`ratelimit:<name>:<window index>`),
    incremented and given a TTL in a single MULTI/EXEC.
    """

    def __init__(self, client: redis.Redis, name: str, max_requests: int, window_ms: int):
        self.client = client
        self.name = name
        self.max_requests = max_requests
        self.window_ms = window_ms

    def try_acquire(self) -> float:
        """Claim one slot in the current window.

        Returns:
            0 if a slot was claimed, otherwise seconds until the window rolls over
        """
        now_ms = int(time.time() * 1000)
        window_index = now_ms // self.window_ms
        key = f"{RATE_LIMIT_KEY_PREFIX}{self.name}:{window_index}"

        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.pexpire(key, self.window_ms * 2)
        count, _ = pipe.execute()

        if int(count) <= self.max_requests:
            return 0.0

        window_end_ms = (window_index + 1) * self.window_ms
        return max(window_end_ms - now_ms, 1) / 1000.0
