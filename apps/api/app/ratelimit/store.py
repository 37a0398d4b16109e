from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar


T = TypeVar("T")


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


EntryUpdate = Callable[[RateLimitEntry | None], tuple[RateLimitEntry, T]]


class RateLimitStore(Protocol):
    """Counter storage for one rate limit dimension.

    ``update`` is the only path the limiting algorithm uses; it must run the
    read-modify-write for a key atomically with respect to other updates and
    to ``sweep``. The plain accessors exist for inspection and tests.
    """

    def get(self, key: str) -> RateLimitEntry | None: ...

    def set(self, key: str, entry: RateLimitEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def update(self, key: str, fn: EntryUpdate[T]) -> T: ...

    def sweep(self, now: float) -> int: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class InMemoryRateLimitStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RateLimitEntry] = {}

    def get(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def update(self, key: str, fn: EntryUpdate[T]) -> T:
        with self._lock:
            entry, result = fn(self._entries.get(key))
            self._entries[key] = entry
            return result

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_time <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
