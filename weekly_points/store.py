"""
store.py — key/value persistence for state, snapshots and the update lock.

Two interchangeable backends, picked once by open_store():
  - RedisStore   durable, shared between processes (REDIS_URL)
  - MemoryStore  process-local; contents are lost when the process exits

Both JSON-encode values on write, so callers never share mutable objects.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Callable

import redis

from .config import Settings

logger = logging.getLogger(__name__)


class MemoryStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[float | None, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return raw

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, (exp, _) in self._data.items() if exp is not None and now >= exp]
        for k in expired:
            del self._data[k]

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._live(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._sweep()
            self._data[key] = (self._expiry(ttl), raw)

    def set_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        raw = json.dumps(value)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (self._expiry(ttl), raw)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class RedisStore:
    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis read of %s failed (%s), treating as a miss", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON value under %s", key)
            return None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        try:
            self.client.set(key, json.dumps(value), ex=int(ttl) if ttl else None)
        except redis.RedisError as e:
            logger.warning("Redis write of %s failed: %s", key, e)

    def set_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        return bool(self.client.set(key, json.dumps(value), nx=True, ex=int(ttl) if ttl else None))

    def delete(self, key: str) -> None:
        self.client.delete(key)


def open_store(settings: Settings):
    if settings.redis_url:
        logger.info("Using Redis store")
        return RedisStore.from_url(settings.redis_url)
    logger.info("REDIS_URL not set, using in-process memory store (state is lost on restart)")
    return MemoryStore()


def acquire_lock(store, key: str, ttl: float) -> str | None:
    """Best-effort SET NX lock. Returns a token on success, None if someone else holds it."""
    token = uuid.uuid4().hex
    try:
        if store.set_if_absent(key, token, ttl):
            return token
    except redis.RedisError as e:
        logger.warning("Lock %s unavailable (%s), continuing without it", key, e)
        return token
    return None


def release_lock(store, key: str, token: str) -> None:
    try:
        if store.get(key) == token:
            store.delete(key)
    except redis.RedisError as e:
        logger.warning("Could not release lock %s: %s", key, e)
