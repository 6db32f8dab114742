"""In-process TTL cache for dictionary lookups and embeddings."""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]


class TTLCache:
    """LRU-bounded mapping whose entries expire ``ttl_s`` seconds after ``set``."""

    def __init__(self, max_items: int = 256, ttl_s: float = 300, clock: Callable[[], float] = time.monotonic):
        self.max_items = max_items
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[Any, float]]" = OrderedDict()

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (_, deadline) in self._entries.items() if deadline <= now]:
            del self._entries[key]
        while len(self._entries) > self.max_items:
            self._entries.popitem(last=False)

    def get(self, key: Hashable) -> Optional[Any]:
        self._evict()
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry[0]

    def set(self, key: Hashable, value: Any, ttl_s: Optional[float] = None) -> None:
        lifetime = self.ttl_s if ttl_s is None else ttl_s
        self._entries[key] = (value, self._clock() + lifetime)
        self._entries.move_to_end(key)
        self._evict()

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._evict()
        return len(self._entries)
