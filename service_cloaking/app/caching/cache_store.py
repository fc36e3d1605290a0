"""
In-process TTL store for reference data.
"""

import copy
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from shared.logging import get_logger

from ..models import CacheEntry


Clock = Callable[[], float]


class CacheStore:
    """Keyed store of the most recent known-good value per reference list.

    Expiry is evaluated lazily on read and nothing is evicted in the
    background; an expired entry stays visible to ``peek`` until it is
    overwritten or ``clear_all`` runs. Values are deep-copied on the way in
    and on the way out so callers never share the stored object.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or time.time
        self._entries: Dict[str, CacheEntry] = {}
        self._hits: Dict[str, int] = {}
        self._misses: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("cloaking.cache_store")

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value if it is still fresh, else ``None``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(self._clock()):
                self._misses[key] = self._misses.get(key, 0) + 1
                fresh = None
            else:
                self._hits[key] = self._hits.get(key, 0) + 1
                fresh = entry

        if fresh is None:
            self.logger.debug("Cache miss", key=key, expired=entry is not None)
            return None

        self.logger.debug("Cache hit", key=key)
        return copy.deepcopy(fresh.value)

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry regardless of freshness, without counting it."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return CacheEntry(
            key=entry.key,
            value=copy.deepcopy(entry.value),
            stored_at=entry.stored_at,
            ttl_seconds=entry.ttl_seconds,
        )

    def is_fresh(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_fresh(self._clock())

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Replace the entry for ``key`` unconditionally."""
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            stored_at=self._clock(),
            ttl_seconds=int(ttl_seconds),
        )
        with self._lock:
            self._entries[key] = entry
        self.logger.info("Cache updated", key=key, ttl_seconds=entry.ttl_seconds)

    def clear_all(self) -> int:
        """Remove every entry. Returns the number of entries dropped."""
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        self.logger.info("All cache cleared", dropped=dropped)
        return dropped

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Observability snapshot; never used for control flow."""
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
            hits = dict(self._hits)
            misses = dict(self._misses)

        return {
            "size": len(entries),
            "keys": [entry.key for entry in entries],
            "entries": [
                {
                    "key": entry.key,
                    "age_seconds": round(entry.age(now), 3),
                    "ttl_seconds": entry.ttl_seconds,
                    "fresh": entry.is_fresh(now),
                    "items": len(entry.value) if isinstance(entry.value, (list, dict)) else None,
                    "hits": hits.get(entry.key, 0),
                    "misses": misses.get(entry.key, 0),
                }
                for entry in entries
            ],
            "hits": hits,
            "misses": misses,
        }
