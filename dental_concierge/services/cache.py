"""In-memory LRU cache for Dentalink responses.

Bounded by the estimated byte size of its values (``json.dumps`` length)
rather than by entry count, with an optional expiry per entry: patient
lookups stay valid for minutes while availability goes stale quickly.
Expired entries are dropped lazily when read.

Keys are namespaced by prefix (``patient:``, ``slots:``) so a booking can
drop every cached availability window with ``invalidate_prefix("slots:")``.

>>> cache = LRUCache(default_ttl=300)
>>> cache.put("patient:1020304050", patient)
>>> cache.put("slots:2026-01-20:2026-01-20", blocks, ttl=120)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class _Entry(NamedTuple):
    value: Any
    size: int
    expires_at: float | None


def estimate_bytes(value: Any) -> int:
    """Approximate size of *value* once serialised."""
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError, OverflowError):
        return len(str(value).encode("utf-8"))


class LRUCache:
    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        *,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_bytes = max_bytes
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()

    @property
    def current_bytes(self) -> int:
        return self._bytes

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        """Return the live value for *key* and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and self._clock() >= entry.expires_at:
                self._drop(key)
                logger.debug("Cache entry %s expired", key)
                return None
            self._entries.move_to_end(key)
            return entry.value

    def put(self, key: str, value: Any, *, ttl: float | None = None) -> None:
        """Store *value*, evicting least recently used entries to make room.

        A value larger than the whole cache is not stored.
        """
        size = estimate_bytes(value)
        if size > self._max_bytes:
            logger.debug("Not caching %s: %d bytes exceeds the %d-byte ceiling", key, size, self._max_bytes)
            return

        ttl = self._default_ttl if ttl is None else ttl
        expires_at = None if ttl is None else self._clock() + ttl

        with self._lock:
            self._drop(key)
            while self._entries and self._bytes + size > self._max_bytes:
                oldest = next(iter(self._entries))
                logger.debug("Evicting %s from cache", oldest)
                self._drop(oldest)
            self._entries[key] = _Entry(value, size, expires_at)
            self._bytes += size

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._drop(key)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with *prefix* and return how many went."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                self._drop(key)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._bytes -= entry.size
        return True
