import logging
from typing import List, Optional

import redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-window counters in Redis. SET NX EX (opens the window) and INCR go out
    in one MULTI/EXEC, so concurrent callers on any instance see a consistent
    count. Works on any Redis server from 2.6.12 on.
    Redis errors propagate: callers fail closed.
    """

    def __init__(self, client: redis.Redis, prefix: str = "rate_limit"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 2.0) -> "RateLimiter":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> bool:
        rate_limit_key = f"{self.prefix}:{key}"

        pipe = self.client.pipeline(transaction=True)
        pipe.set(rate_limit_key, 0, ex=window_seconds, nx=True)
        pipe.incr(rate_limit_key)
        _, count = pipe.execute()

        limited = int(count) > limit
        if limited:
            logger.info("rate limit exceeded key=%s count=%s limit=%s", key, count, limit)
        return limited


def is_trusted_source(
    license_key: str,
    team_id: str,
    trusted_license_keys: Optional[List[str]],
    trusted_team_ids: Optional[List[str]],
) -> bool:
    if not trusted_license_keys or not trusted_team_ids:
        return False
    return license_key in trusted_license_keys and team_id in trusted_team_ids
