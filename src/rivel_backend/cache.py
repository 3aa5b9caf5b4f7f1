from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def content_key(data: bytes) -> str:
    """SHA-256 hex digest used as the cache key for uploaded content."""
    return hashlib.sha256(data).hexdigest()


class TTLCache(Generic[V]):
    """
    Small in-memory cache with per-entry expiry and a size bound.

    When full, the entry inserted longest ago is dropped. A hit re-inserts
    the entry at the young end, so frequently read results survive longer.
    """

    def __init__(
        self,
        ttl_ms: int = 5 * 60 * 1000,
        max_items: int = 200,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.ttl_ms = ttl_ms
        self.max_items = max_items
        self._clock = clock or _wall_clock_ms
        # key -> (expires_at_ms, value)
        self._items: "OrderedDict[str, Tuple[int, V]]" = OrderedDict()

    def get(self, key: str) -> Optional[V]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() > expires_at:
            del self._items[key]
            return None
        self._items.move_to_end(key)
        return value

    def set(self, key: str, value: V) -> None:
        if key in self._items:
            del self._items[key]
        elif len(self._items) >= self.max_items:
            self._items.popitem(last=False)
        self._items[key] = (self._clock() + self.ttl_ms, value)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: Any) -> bool:
        return key in self._items
