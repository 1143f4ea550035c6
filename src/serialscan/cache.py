"""Bounded caches for per-string resolution and validation results.

Both caches are optimizations only: a component must produce identical
output with ``NullCache`` swapped in.
"""

from collections import OrderedDict
from typing import Any, Dict, Hashable, Optional


class LRUCache:
    """Size-bounded cache that evicts the least recently used entry.

    Args:
        max_size: Maximum number of entries kept.
    """

    def __init__(self, max_size: int = 1000):
        if max_size <= 0:
            raise ValueError(f"max_size must be > 0, got {max_size}")
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self.stats = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value for *key*, or None."""
        if key not in self._entries:
            self.stats["misses"] += 1
            return None
        self._entries.move_to_end(key)
        self.stats["hits"] += 1
        return self._entries[key]

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.stats["evictions"] += 1

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get_stats(self) -> Dict[str, float]:
        """Get cache statistics."""
        lookups = max(self.stats["hits"] + self.stats["misses"], 1)
        return {
            "size": len(self._entries),
            "hits": self.stats["hits"],
            "misses": self.stats["misses"],
            "hit_pct": 100 * self.stats["hits"] / lookups,
            "evictions": self.stats["evictions"],
        }


class NullCache:
    """Cache that never stores anything."""

    max_size = 0

    def get(self, key: Hashable) -> Optional[Any]:
        return None

    def put(self, key: Hashable, value: Any) -> None:
        pass

    def clear(self) -> None:
        pass

    def __len__(self) -> int:
        return 0

    def __contains__(self, key: Hashable) -> bool:
        return False

    def get_stats(self) -> Dict[str, float]:
        return {"size": 0, "hits": 0, "misses": 0, "hit_pct": 0.0, "evictions": 0}
