"""
Redis backed fixed-window rate limiting for the public API
"""
import logging
import time
from typing import Dict, Any, Callable

import redis

logger = logging.getLogger(__name__)

class RedisRateLimiter:
    """Counts requests per identity and endpoint in fixed windows.

    Fails open: when Redis is unreachable the request is allowed and the
    failure is logged.
    """

    def __init__(self, client, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.client = client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    @classmethod
    def from_url(cls, redis_url: str, max_requests: int, window_seconds: int) -> "RedisRateLimiter":
        client = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=1.0)
        return cls(client, max_requests, window_seconds)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def check(self, identity: str, endpoint: str) -> Dict[str, Any]:
        """Check and update the counter for identity/endpoint"""
        now = int(self.clock())
        window_start = now // self.window_seconds * self.window_seconds
        reset_time = window_start + self.window_seconds
        current_key = f"rate_limit:{identity}:{endpoint}:{window_start}"

        try:
            current_count = self.client.get(current_key)
            current_count = int(current_count) if current_count else 0

            if current_count >= self.max_requests:
                return {
                    "allowed": False,
                    "count": current_count,
                    "remaining": 0,
                    "reset_time": reset_time,
                    "retry_after": reset_time - now
                }

            pipe = self.client.pipeline()
            pipe.incr(current_key)
            pipe.expire(current_key, self.window_seconds)
            new_count = pipe.execute()[0]
        except redis.RedisError as e:
            logger.warning(f"🚨 Rate limit check failed, allowing request: {e}", extra={
                "identity": identity,
                "endpoint": endpoint,
            })
            return {
                "allowed": True,
                "count": 0,
                "remaining": self.max_requests,
                "reset_time": 0,
                "retry_after": 0
            }

        logger.debug(f"Rate limit check for {identity}:{endpoint} - count: {new_count}/{self.max_requests}")

        return {
            "allowed": new_count <= self.max_requests,
            "count": new_count,
            "remaining": max(0, self.max_requests - new_count),
            "reset_time": reset_time,
            "retry_after": reset_time - now if new_count > self.max_requests else 0
        }
