import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe mapping whose entries expire ``ttl_secs`` after being set.

    Expired entries are dropped lazily on read. Concurrent writers for the
    same key overwrite each other; the last write wins.
    """

    def __init__(
        self, ttl_secs: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        if ttl_secs <= 0:
            raise ValueError("ttl_secs must be positive")
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._entries: dict[Hashable, _Entry[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        expires_at = self._clock() + self.ttl_secs
        with self._lock:
            self._entries[key] = _Entry(value, expires_at)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
