import threading
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class ConcurrentMap(Generic[K, V]):
    """
    Dict guarded by a single lock.

    Request handlers mutate these maps from the event loop while pipeline and
    sync workers touch them from executor threads, so every access goes
    through the lock. ``update`` runs a callback under the lock for
    read-modify-write operations.
    """

    def __init__(self):
        self._data: Dict[K, V] = {}
        self._lock = threading.RLock()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            return self._data.get(key, default)

    def set_if_absent(self, key: K, value: V) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            return self._data.pop(key, default)

    def update(self, key: K, fn: Callable[[Optional[V]], V]) -> V:
        with self._lock:
            value = fn(self._data.get(key))
            self._data[key] = value
            return value

    def items(self) -> List[Tuple[K, V]]:
        with self._lock:
            return list(self._data.items())

    def values(self) -> List[V]:
        with self._lock:
            return list(self._data.values())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def lock(self) -> threading.RLock:
        return self._lock
