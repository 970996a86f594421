"""Process-local key/value storage used by the token store and rate limiter.

``KeyValueStore`` is the port the services depend on. ``MemoryStore`` keeps
everything in a dict guarded by a re-entrant lock; a deployment running more
than one worker process has to provide a shared implementation instead.
"""

from abc import ABC, abstractmethod
import threading
from typing import Callable, Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class KeyValueStore(ABC, Generic[T]):
    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        ...

    @abstractmethod
    def put(self, key: str, value: T) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def update(self, key: str, fn: Callable[[Optional[T]], Optional[T]]) -> Optional[T]:
        """Atomically replace the value under ``key`` with ``fn(current)``.

        Returning ``None`` from ``fn`` removes the key. The new value is
        returned.
        """

    @abstractmethod
    def values(self) -> list[T]:
        ...

    @abstractmethod
    def sweep_expired(self, is_expired: Callable[[T], bool]) -> int:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryStore(KeyValueStore[T]):
    def __init__(self) -> None:
        self._items: dict[str, T] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._items.get(key)

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def update(self, key: str, fn: Callable[[Optional[T]], Optional[T]]) -> Optional[T]:
        with self._lock:
            value = fn(self._items.get(key))
            if value is None:
                self._items.pop(key, None)
            else:
                self._items[key] = value
            return value

    def values(self) -> list[T]:
        with self._lock:
            return list(self._items.values())

    def sweep_expired(self, is_expired: Callable[[T], bool]) -> int:
        with self._lock:
            expired = [key for key, value in self._items.items() if is_expired(value)]
            for key in expired:
                del self._items[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._items))
