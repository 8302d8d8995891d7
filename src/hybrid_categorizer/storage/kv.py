"""
Key-value store used for the category cache, metric samples and alerts.

The surface mirrors the small subset of Redis commands the core needs, so a
Redis client wrapped to raise StoreUnavailable can be injected in place of the
in-memory implementation.
"""
import threading
from collections.abc import Callable
from time import monotonic
from typing import Any, Protocol

from hybrid_categorizer.errors import StoreUnavailable


class KeyValueStore(Protocol):
    def ping(self) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl_seconds: int, value: str) -> None: ...

    def delete(self, key: str) -> int: ...

    def expire(self, key: str, ttl_seconds: int) -> bool: ...

    def ttl(self, key: str) -> int: ...

    def incr(self, key: str, amount: int = 1) -> int: ...

    def incrbyfloat(self, key: str, amount: float) -> float: ...

    def lpush(self, key: str, value: str) -> int: ...

    def lrange(self, key: str, start: int, end: int) -> list[str]: ...

    def sadd(self, key: str, member: str) -> int: ...

    def srem(self, key: str, member: str) -> int: ...

    def smembers(self, key: str) -> set[str]: ...

    def scan_prefix(self, prefix: str) -> list[str]: ...


class InMemoryKeyValueStore:
    """Thread-safe in-process store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("Key-value store is not available")

    def _purge_if_expired(self, key: str) -> None:
        """Must be called while holding _lock."""
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)

    def _live(self, key: str, kind: type) -> Any:
        self._purge_if_expired(key)
        value = self._data.get(key)
        if value is not None and not isinstance(value, kind):
            raise TypeError(f"Key '{key}' holds a {type(value).__name__}, not a {kind.__name__}")
        return value

    def ping(self) -> bool:
        self._check_available()
        return True

    def get(self, key: str) -> str | None:
        self._check_available()
        with self._lock:
            return self._live(key, str)

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        self._check_available()
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._data[key] = value
            self._expires_at[key] = self._clock() + ttl_seconds

    def delete(self, key: str) -> int:
        self._check_available()
        with self._lock:
            self._purge_if_expired(key)
            self._expires_at.pop(key, None)
            return 1 if self._data.pop(key, None) is not None else 0

    def expire(self, key: str, ttl_seconds: int) -> bool:
        self._check_available()
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            self._expires_at[key] = self._clock() + ttl_seconds
            return True

    def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; -1 without expiry, -2 when missing."""
        self._check_available()
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return -2
            expires_at = self._expires_at.get(key)
            if expires_at is None:
                return -1
            return int(round(expires_at - self._clock()))

    def incr(self, key: str, amount: int = 1) -> int:
        self._check_available()
        with self._lock:
            current = self._live(key, str)
            value = int(current or 0) + amount
            self._data[key] = str(value)
            return value

    def incrbyfloat(self, key: str, amount: float) -> float:
        self._check_available()
        with self._lock:
            current = self._live(key, str)
            value = float(current or 0.0) + amount
            self._data[key] = repr(value)
            return value

    def lpush(self, key: str, value: str) -> int:
        self._check_available()
        with self._lock:
            items = self._live(key, list)
            if items is None:
                items = []
                self._data[key] = items
            items.insert(0, value)
            return len(items)

    def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check_available()
        with self._lock:
            items = self._live(key, list) or []
            stop = None if end == -1 else end + 1
            return list(items[start:stop])

    def sadd(self, key: str, member: str) -> int:
        self._check_available()
        with self._lock:
            members = self._live(key, set)
            if members is None:
                members = set()
                self._data[key] = members
            if member in members:
                return 0
            members.add(member)
            return 1

    def srem(self, key: str, member: str) -> int:
        self._check_available()
        with self._lock:
            members = self._live(key, set)
            if not members or member not in members:
                return 0
            members.discard(member)
            return 1

    def smembers(self, key: str) -> set[str]:
        self._check_available()
        with self._lock:
            return set(self._live(key, set) or ())

    def scan_prefix(self, prefix: str) -> list[str]:
        self._check_available()
        with self._lock:
            for key in [k for k in self._data if k.startswith(prefix)]:
                self._purge_if_expired(key)
            return sorted(k for k in self._data if k.startswith(prefix))
