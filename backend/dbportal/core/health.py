"""
Health-check helpers for the worker process.

Liveness  - is the process alive? (cheap, no I/O)
Readiness - can it take jobs? (portal database + Redis when configured)
"""

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from dbportal.core.config import settings
from dbportal.core.redis_client import ping as redis_ping

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Individual dependency checks
# ---------------------------------------------------------------------------


def check_database(engine: Engine) -> bool:
    """Check the portal database by running SELECT 1. Returns True if ok."""
    try:
        with Session(engine) as session:
            session.exec(select(1)).first()
        return True
    except Exception:
        logger.warning("Portal database check failed", exc_info=True)
        return False


def check_redis(client: Any) -> bool:
    """PING the lock backend. True if ok or Redis is not configured."""
    return redis_ping(client)


# ---------------------------------------------------------------------------
# Composite probes
# ---------------------------------------------------------------------------


def liveness_check() -> tuple[bool, list[str]]:
    return (True, [])


def readiness_check(engine: Engine, redis_client: Any = None) -> tuple[bool, list[str]]:
    """
    Returns (ok, list of failed checks). Redis is only required when REDIS_URL is set.
    """
    failures: list[str] = []

    if not check_database(engine):
        failures.append("database")

    if settings.lock_enabled_redis and (redis_client is None or not check_redis(redis_client)):
        failures.append("redis")

    return (len(failures) == 0, failures)
