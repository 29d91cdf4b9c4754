# Overview: Key/value store abstraction for ephemeral tracking tokens and rate-limit counters.

"""
Ephemeral key/value store.

WHY: Tracking tokens and rate-limit windows are process-level state that
can be lost on restart without harming order data. They are reached only
through KeyValueStore so a shared cache (Redis, memcached) can replace the
in-memory implementation without touching call sites.

The store is resolved from `current_app.extensions[KV_STORE_EXTENSION]`;
tests and deployments install their own instance there.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from flask import current_app


KV_STORE_EXTENSION = "tubeshop.kv_store"

# Opportunistic purge cadence for the in-memory store
PURGE_EVERY_N_WRITES = 200


class KeyValueStore(ABC):
    """get/set/delete/expire contract with optional per-key TTL (seconds)."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def expire(self, key: str, ttl_seconds: float) -> bool:
        """Reset the TTL of an existing key. Returns False if the key is absent."""

    @abstractmethod
    def update(
        self,
        key: str,
        func: Callable[[Any | None], Any],
        *,
        ttl_seconds: float | None = None,
    ) -> Any:
        """Atomically replace the value with func(current) and return the new value."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""


class MemoryKeyValueStore(KeyValueStore):
    """
    Process-local store guarded by a lock.

    Expired entries are invisible to get() immediately; physical removal
    happens opportunistically every PURGE_EVERY_N_WRITES writes or through
    purge_expired().
    """

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()
        self._writes = 0

    def _expires_at(self, ttl_seconds: float | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    def _live(self, key: str, now: float) -> tuple[Any, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return None
        return entry

    def _note_write(self) -> None:
        self._writes += 1
        if self._writes >= PURGE_EVERY_N_WRITES:
            self._writes = 0
            self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        dead = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
        for k in dead:
            del self._data[k]
        return len(dead)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expires_at(ttl_seconds))
            self._note_write()

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def expire(self, key: str, ttl_seconds: float) -> bool:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return False
            self._data[key] = (entry[0], self._expires_at(ttl_seconds))
            return True

    def update(self, key, func, *, ttl_seconds=None):
        with self._lock:
            entry = self._live(key, self._clock())
            new_value = func(entry[0] if entry else None)
            self._data[key] = (new_value, self._expires_at(ttl_seconds))
            self._note_write()
            return new_value

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def get_kv_store() -> KeyValueStore:
    """Return the app's store, installing an in-memory one on first use."""
    store = current_app.extensions.get(KV_STORE_EXTENSION)
    if store is None:
        store = MemoryKeyValueStore()
        current_app.extensions[KV_STORE_EXTENSION] = store
    return store
