"""
Lease-based resource lock keyed by resource key (``{db_type}:{instance}:{db}``).

Secondary guard behind the queue's singleton key: a live lease cannot be taken
by a second owner, acquisition never blocks, and leases expire on their own
if the holder dies. Redis (preferred, shared across processes, via redis-py's
``Lock``) or in-memory (single process).
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import redis
from redis.exceptions import LockError
from redis.lock import Lock

from dbportal.core import audit

_LOG = logging.getLogger(__name__)

_LOCK_KEY_PREFIX = "lock:resource:"


@dataclass(frozen=True)
class LockToken:
    key: str
    owner: str
    ttl_ms: int
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _MemoryLease:
    owner: str
    expires_at: float  # time.monotonic()


class ResourceLock:
    """
    acquire(key, ttl_ms) -> LockToken | None (busy)
    refresh(token, ttl_ms) -> bool (False = lease lost/expired)
    release(token); release_all() at shutdown.
    """

    def __init__(self, redis_client: Any = None) -> None:
        self._redis = redis_client
        self._memory: dict[str, _MemoryLease] = {}
        self._memory_lock = threading.Lock()
        # Tokens held by this process, for release_all()
        self._held: dict[str, LockToken] = {}
        self._held_lock = threading.Lock()
        # Redis leases by owner; refreshed from the heartbeat thread
        self._redis_leases: dict[str, Lock] = {}

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self, key: str, ttl_ms: int) -> LockToken | None:
        if not key:
            raise ValueError("lock key must not be empty")
        owner = uuid.uuid4().hex
        ok = (
            self._acquire_redis(key, owner, ttl_ms)
            if self._redis is not None
            else self._acquire_memory(key, owner, ttl_ms)
        )
        if not ok:
            _LOG.info("[LOCK] Lock unavailable key=%s backend=%s", key, self.backend)
            return None
        token = LockToken(key=key, owner=owner, ttl_ms=ttl_ms)
        with self._held_lock:
            self._held[key] = token
        audit.audit(audit.LOCK_ACQUIRED, key=key, backend=self.backend, ttl_ms=ttl_ms)
        return token

    def refresh(self, token: LockToken, ttl_ms: int | None = None) -> bool:
        ttl = ttl_ms or token.ttl_ms
        if self._redis is not None:
            with self._held_lock:
                redis_lease = self._redis_leases.get(token.owner)
            if redis_lease is None:
                # Acquired fail-open while Redis was down
                return True
            try:
                # Owner-checked: a lease re-taken by someone else is never extended
                return bool(redis_lease.extend(ttl / 1000.0, replace_ttl=True))
            except LockError:
                return False
            except redis.RedisError as e:
                _LOG.warning("[LOCK] refresh failed key=%s: %s", token.key, e)
                return True  # fail-open: queue serialization still holds
        with self._memory_lock:
            lease = self._memory.get(token.key)
            if lease is None or lease.owner != token.owner or lease.expires_at <= time.monotonic():
                return False
            lease.expires_at = time.monotonic() + ttl / 1000.0
            return True

    def release(self, token: LockToken) -> None:
        if self._redis is not None:
            with self._held_lock:
                redis_lease = self._redis_leases.pop(token.owner, None)
            if redis_lease is not None:
                try:
                    redis_lease.release()
                except LockError:
                    _LOG.info("[LOCK] Lease already lost key=%s", token.key)
                except redis.RedisError as e:
                    _LOG.error("[LOCK] Failed to release lock key=%s: %s", token.key, e)
        else:
            with self._memory_lock:
                lease = self._memory.get(token.key)
                if lease is not None and lease.owner == token.owner:
                    self._memory.pop(token.key, None)
        with self._held_lock:
            held = self._held.get(token.key)
            if held is not None and held.owner == token.owner:
                self._held.pop(token.key, None)
        audit.audit(audit.LOCK_RELEASED, key=token.key, backend=self.backend)

    def release_all(self) -> None:
        with self._held_lock:
            tokens = list(self._held.values())
        for token in tokens:
            self.release(token)
        _LOG.info("[LOCK] All locks released count=%d", len(tokens))

    def is_held(self, key: str) -> bool:
        """True if this process currently holds a lease for *key*."""
        with self._held_lock:
            return key in self._held

    def held_count(self) -> int:
        with self._held_lock:
            return len(self._held)

    def sweep(self) -> int:
        """Drop expired in-memory leases (Redis expires keys itself). Returns count removed."""
        if self._redis is not None:
            return 0
        now = time.monotonic()
        with self._memory_lock:
            stale = [k for k, lease in self._memory.items() if lease.expires_at <= now]
            for k in stale:
                self._memory.pop(k, None)
        if stale:
            _LOG.info("[LOCK] Swept %d expired lease(s): %s", len(stale), stale)
        return len(stale)

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _acquire_redis(self, key: str, owner: str, ttl_ms: int) -> bool:
        lease = self._redis.lock(
            _LOCK_KEY_PREFIX + key,
            timeout=ttl_ms / 1000.0,
            blocking=False,
            thread_local=False,
        )
        try:
            acquired = bool(lease.acquire(blocking=False, token=owner))
        except redis.RedisError as e:
            _LOG.warning("[LOCK] Redis error on acquire key=%s, allowing: %s", key, e)
            return True  # fail-open
        if acquired:
            with self._held_lock:
                self._redis_leases[owner] = lease
        return acquired

    def _acquire_memory(self, key: str, owner: str, ttl_ms: int) -> bool:
        now = time.monotonic()
        with self._memory_lock:
            lease = self._memory.get(key)
            if lease is not None and lease.expires_at > now:
                return False
            self._memory[key] = _MemoryLease(owner=owner, expires_at=now + ttl_ms / 1000.0)
            return True
