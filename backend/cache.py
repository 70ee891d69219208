"""CycleSafe Backend — Shared key-value cache

The aggregator and risk service talk to the rest of the system through a
small string-keyed store: last-known coordinates and address, the
weather-derived alert list, and the published alert snapshot. Values are
strings (JSON for structured entries), as any browser-side or Redis-backed
store would hold them.
"""

import json
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Mapping, Optional, Protocol

logger = logging.getLogger("cyclesafe.cache")

Listener = Callable[[str, Optional[str]], None]


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    def set_many(self, values: Mapping[str, str]) -> None: ...

    def delete(self, key: str) -> None: ...

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]: ...


class MemoryStore:
    """In-memory store with optional per-key TTL and change listeners.

    Listeners run after the write is visible, outside the lock. set_many
    applies every write before any listener runs.
    """

    def __init__(self, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.time):
        self._store: dict[str, tuple[str, float]] = {}
        self._default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def _expiry(self, ttl: Optional[float]) -> float:
        ttl = ttl if ttl is not None else self._default_ttl
        return self._clock() + ttl if ttl else float("inf")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: Optional[float] = None):
        with self._lock:
            self._store[key] = (value, self._expiry(ttl))
        self._notify([(key, value)])

    def set_many(self, values: Mapping[str, str]):
        with self._lock:
            for key, value in values.items():
                self._store[key] = (value, self._expiry(None))
        self._notify(list(values.items()))

    def delete(self, key: str):
        with self._lock:
            existed = self._store.pop(key, None) is not None
        if existed:
            self._notify([(key, None)])

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[key].append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners.get(key, []):
                    self._listeners[key].remove(listener)

        return unsubscribe

    def evict_expired(self):
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]

    def clear(self):
        with self._lock:
            self._store.clear()

    def _notify(self, changes: list[tuple[str, Optional[str]]]):
        with self._lock:
            pending = [(list(self._listeners.get(k, [])), k, v) for k, v in changes]
        for listeners, key, value in pending:
            for listener in listeners:
                try:
                    listener(key, value)
                except Exception as e:
                    logger.warning(f"Cache listener for {key} failed: {e}")


def get_json(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """Read a JSON entry; missing or malformed content yields default."""
    raw = store.get(key)
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.debug(f"Ignoring malformed cache entry {key}: {e}")
        return default


def set_json(store: KeyValueStore, key: str, value: Any, ttl: Optional[float] = None):
    store.set(key, json.dumps(value, default=str), ttl=ttl)
