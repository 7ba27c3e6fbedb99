"""Key-value cache collaborator with per-entry expiry."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol


class Cache(Protocol):
    """Interface Warden expects from an ephemeral cache.

    ``add`` must be an atomic insert-if-absent: nonce claiming depends on it.
    ``append`` must atomically extend the list stored under ``key`` and return
    its new contents; infraction ledgers depend on it.
    """

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def add(self, key: str, value: Any, ttl_seconds: float) -> bool: ...

    def delete(self, key: str) -> None: ...

    def append(self, key: str, item: Any, ttl_seconds: float, *, max_items: int | None = None) -> list[Any]: ...


class MemoryCache:
    """Thread-safe in-process :class:`Cache`."""

    def __init__(self, *, clock: Callable[[], float] | None = None, cull_every: int = 1024) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock or time.time
        self._cull_every = max(1, cull_every)
        self._writes = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            self._entries[key] = (now + ttl_seconds, value)
            self._after_write(now)

    def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                return False
            self._entries[key] = (now + ttl_seconds, value)
            self._after_write(now)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def append(self, key: str, item: Any, ttl_seconds: float, *, max_items: int | None = None) -> list[Any]:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            items = list(entry[1]) if entry is not None and entry[0] > now else []
            items.append(item)
            if max_items is not None and len(items) > max_items:
                items = items[-max_items:]
            self._entries[key] = (now + ttl_seconds, tuple(items))
            self._after_write(now)
            return items

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)

    def _after_write(self, now: float) -> None:
        self._writes += 1
        if self._writes % self._cull_every:
            return
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
