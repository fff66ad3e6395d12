"""
Redis client factory for the resource lock.

The pipeline builds one client at startup and passes it to ``ResourceLock``;
``None`` means Redis is not configured or unreachable and the lock falls back
to in-process leases.
"""

import logging

import redis

from dbportal.core.config import settings

_LOG = logging.getLogger(__name__)


def create_redis(url: str | None = None) -> "redis.Redis | None":
    """Return a connected client (decode_responses=True), or None when unavailable."""
    url = (url if url is not None else settings.REDIS_URL).strip()
    if not url:
        return None
    try:
        r = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        )
        r.ping()
        return r
    except redis.RedisError as e:
        _LOG.warning("Redis unavailable at startup, using in-process locks: %s", e)
        return None


def ping(client: "redis.Redis | None") -> bool:
    """True if *client* answers PING. A missing client counts as healthy (not required)."""
    if client is None:
        return True
    try:
        return bool(client.ping())
    except redis.RedisError:
        return False
