"""Redis connection configuration."""

from typing import Optional

import redis.asyncio as redis

from vidpipe.core.config import settings


def create_redis(url: Optional[str] = None) -> redis.Redis:
    """Create a Redis client with bounded socket timeouts.

    Commands never block indefinitely: a dead broker surfaces as a
    ConnectionError/TimeoutError after the configured timeout.
    """
    return redis.from_url(
        url or settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        health_check_interval=30,
    )

