from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import Iterable
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")
T = TypeVar("T")


class _BoundedMap(Generic[K, V]):
    """Insertion-ordered map that evicts its least recently touched key."""

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: K, default: V | None = None, *, touch: bool = False) -> V | None:
        if key not in self._data:
            return default
        value = self._data[key]
        if touch:
            self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        is_new = key not in self._data
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def pop(self, key: K) -> V | None:
        return self._data.pop(key, None)


class BoundedDequeMap(Generic[K, T]):
    """Per-key bounded deques, with a bounded number of keys."""

    def __init__(self, *, max_keys: int, window_size: int):
        self._window_size = max(1, int(window_size))
        self._map: _BoundedMap[K, deque[T]] = _BoundedMap(max_keys=max_keys)

    def __contains__(self, key: object) -> bool:
        return key in self._map

    def __len__(self) -> int:
        return len(self._map)

    def get(self, key: K) -> list[T] | None:
        bucket = self._map.get(key, None, touch=True)
        if bucket is None:
            return None
        return list(bucket)

    def append(self, key: K, value: T) -> deque[T]:
        bucket = self._map.get(key, None, touch=False)
        if bucket is None:
            bucket = deque(maxlen=self._window_size)
        bucket.append(value)
        self._map.set(key, bucket)
        return bucket

    def replace(self, key: K, values: Iterable[T]) -> deque[T]:
        bucket: deque[T] = deque(values, maxlen=self._window_size)
        self._map.set(key, bucket)
        return bucket

    def discard(self, key: K) -> None:
        self._map.pop(key)
