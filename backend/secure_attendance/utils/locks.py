"""Keyed mutual exclusion used to serialize writers per logical key."""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable

import redis

from secure_attendance.utils.errors import SystemUnavailable

logger = logging.getLogger(__name__)


class KeyedLock:
    """In-process lock registry: one ``threading.Lock`` per key.

    Entries are reference counted so the registry does not grow with every
    (student, session) pair ever seen.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        acquired = lock.acquire(timeout=self.timeout)
        try:
            if not acquired:
                raise SystemUnavailable(f"Timed out waiting for lock {key!r}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisKeyedLock:
    """Cross-process variant backed by redis-py's ``Lock``."""

    def __init__(self, client: redis.Redis, timeout: float = 10.0, prefix: str = 'attendance:lock'):
        self.client = client
        self.timeout = timeout
        self.prefix = prefix

    def _name(self, key: Hashable) -> str:
        if isinstance(key, tuple):
            return ':'.join([self.prefix] + [str(part) for part in key])
        return f"{self.prefix}:{key}"

    @contextmanager
    def hold(self, key: Hashable):
        lock = self.client.lock(
            self._name(key),
            timeout=self.timeout,
            blocking_timeout=self.timeout
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise SystemUnavailable(f"Lock backend unavailable: {e}")
        if not acquired:
            raise SystemUnavailable(f"Timed out waiting for lock {key!r}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # Lock expired while held; the unique constraint still guards the write
                logger.warning("Redis lock %s expired before release", self._name(key))


def build_lock_manager(config) -> object:
    """Create the lock manager selected by ``SCAN_LOCK_BACKEND``."""
    timeout = config.get('SCAN_LOCK_TIMEOUT_SECONDS', 10)
    if config.get('SCAN_LOCK_BACKEND') == 'redis':
        if not config.get('REDIS_URL'):
            raise RuntimeError("SCAN_LOCK_BACKEND='redis' requires REDIS_URL")
        client = redis.Redis.from_url(config['REDIS_URL'])
        return RedisKeyedLock(client, timeout=timeout)
    return KeyedLock(timeout=timeout)
