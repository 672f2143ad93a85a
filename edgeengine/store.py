"""A keyed object store holding applications, configurations and secrets."""

from __future__ import annotations

import copy
import threading
from typing import Any, Iterator, TypeVar

T = TypeVar("T")


class KeyNotFoundError(KeyError):
    """Raised when a key is not present in the store."""


class ObjectStore:
    """Thread-safe store that keeps independent copies of the objects put in it."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            try:
                value = self._items[key]
            except KeyError:
                raise KeyNotFoundError(key) from None
            return copy.deepcopy(value)

    def upsert(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                del self._items[key]
            except KeyError:
                raise KeyNotFoundError(key) from None

    def for_each(self, kind: type[T]) -> Iterator[T]:
        """Yield copies of every stored object of the given type."""
        with self._lock:
            matches = [copy.deepcopy(v) for v in self._items.values() if isinstance(v, kind)]
        yield from matches

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)