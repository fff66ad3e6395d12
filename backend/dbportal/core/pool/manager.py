"""
Connection pools for target databases.

Postgres: per (instance, database) list of idle psycopg connections with
health-check on checkout and max-age eviction.
MongoDB: one MongoClient per (instance, database); the driver pools sockets.
"""

import logging
import threading
import time
from typing import Any, NamedTuple

from dbportal.core.config import settings

from .connect import TargetCoordinates, connect_mongo, connect_postgres

_log = logging.getLogger(__name__)

_PING_IDLE_THRESHOLD = 30.0  # only ping connections idle longer than this (seconds)


class _PoolEntry(NamedTuple):
    conn: Any
    created_at: float  # time.monotonic() when the connection was opened
    last_used: float   # time.monotonic() when last returned to pool


class PoolManager:
    """Per-target connection pool with health-check and max-age."""

    def __init__(
        self,
        *,
        pool_size: int | None = None,
        max_age_sec: float | None = None,
    ) -> None:
        self._pools: dict[str, list[_PoolEntry]] = {}
        self._created: dict[int, float] = {}
        self._mongo: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._pool_size = pool_size if pool_size is not None else settings.TARGET_POOL_SIZE
        self._max_age = float(
            max_age_sec if max_age_sec is not None else settings.TARGET_POOL_MAX_AGE_SEC
        )

    # ------------------------------------------------------------------
    # PostgreSQL
    # ------------------------------------------------------------------

    def get_connection(self, target: TargetCoordinates) -> Any:
        """Get a healthy connection for *target* (from pool or freshly opened)."""
        now = time.monotonic()
        while True:
            entry = self._pop(target.pool_key)
            if entry is None:
                break
            if self._is_expired(entry):
                self._close_quiet(entry.conn)
                continue
            idle_sec = now - entry.last_used
            if idle_sec > _PING_IDLE_THRESHOLD and not self._is_alive(entry.conn):
                self._close_quiet(entry.conn)
                continue
            try:
                entry.conn.rollback()
            except Exception:
                self._close_quiet(entry.conn)
                continue
            return entry.conn

        conn = connect_postgres(target)
        with self._lock:
            self._created[id(conn)] = time.monotonic()
        return conn

    def release(self, conn: Any, target: TargetCoordinates) -> None:
        """Return a connection to the pool (or close it if pool is full)."""
        try:
            conn.rollback()
        except Exception:
            self._forget(conn)
            self._close_quiet(conn)
            return

        with self._lock:
            pool = self._pools.setdefault(target.pool_key, [])
            if len(pool) < self._pool_size:
                now = time.monotonic()
                created = self._created.get(id(conn), now)
                pool.append(_PoolEntry(conn=conn, created_at=created, last_used=now))
                return

        self._forget(conn)
        self._close_quiet(conn)

    # ------------------------------------------------------------------
    # MongoDB
    # ------------------------------------------------------------------

    def get_mongo_client(self, target: TargetCoordinates) -> Any:
        with self._lock:
            client = self._mongo.get(target.pool_key)
        if client is not None:
            return client
        client = connect_mongo(target)
        with self._lock:
            existing = self._mongo.setdefault(target.pool_key, client)
        if existing is not client:
            self._close_quiet(client)
        return existing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispose(self, pool_key: str | None = None) -> None:
        """Close pooled connections and Mongo clients. ``None`` = dispose all."""
        with self._lock:
            if pool_key is not None:
                entries = self._pools.pop(pool_key, [])
                mongo = [c for c in [self._mongo.pop(pool_key, None)] if c is not None]
            else:
                entries = [e for pool in self._pools.values() for e in pool]
                self._pools.clear()
                mongo = list(self._mongo.values())
                self._mongo.clear()
            for e in entries:
                self._created.pop(id(e.conn), None)
        for e in entries:
            self._close_quiet(e.conn)
        for c in mongo:
            self._close_quiet(c)

    def stats(self) -> dict[str, int]:
        """Return pool statistics for monitoring."""
        with self._lock:
            total = sum(len(p) for p in self._pools.values())
            return {
                "targets": len(self._pools),
                "idle_connections": total,
                "mongo_clients": len(self._mongo),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pop(self, pool_key: str) -> _PoolEntry | None:
        with self._lock:
            pool = self._pools.get(pool_key)
            if pool:
                return pool.pop()
        return None

    def _forget(self, conn: Any) -> None:
        with self._lock:
            self._created.pop(id(conn), None)

    def _is_expired(self, entry: _PoolEntry) -> bool:
        expired = (time.monotonic() - entry.created_at) > self._max_age
        if expired:
            self._forget(entry.conn)
        return expired

    @staticmethod
    def _is_alive(conn: Any) -> bool:
        """Lightweight ping: attempt a no-op query to detect broken connections."""
        try:
            cur = conn.cursor()
            cur.execute("SELECT 1")
            cur.close()
            return True
        except Exception:
            return False

    @staticmethod
    def _close_quiet(conn: Any) -> None:
        try:
            conn.close()
        except Exception:
            pass
