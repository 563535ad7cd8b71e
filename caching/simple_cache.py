"""
Owned in-memory TTL cache
Each consumer holds its own instance; the clock is injectable so expiry can be
exercised in tests without waiting
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    cached_at: float
    expires_at: float


class SimpleCache:
    """In-memory cache with per-entry TTL and explicit eviction"""

    def __init__(self, default_ttl: float = 300, clock: Optional[Callable[[], float]] = None, name: str = "cache"):
        self._entries: Dict[str, CacheEntry] = {}
        self.default_ttl = default_ttl
        self.name = name
        self._clock = clock or time.monotonic
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def now(self) -> float:
        return self._clock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Fresh entry for key, or None; an expired entry is evicted on sight"""
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None

        if self.now() >= entry.expires_at:
            del self._entries[key]
            self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None:
            ttl = self.default_ttl
        now = self.now()
        self._entries[key] = CacheEntry(value=value, cached_at=now, expires_at=now + ttl)
        self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        if key in self._entries:
            del self._entries[key]
            self.stats["deletes"] += 1
            return True
        return False

    def clear(self) -> None:
        self.stats["deletes"] += len(self._entries)
        self._entries.clear()

    def evict_expired(self) -> int:
        """Drop every expired entry, returns how many were removed"""
        now = self.now()
        expired_keys = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired_keys:
            del self._entries[key]
        self.stats["evictions"] += len(expired_keys)
        if expired_keys:
            logger.debug(f"🧹 CACHE_EVICTED: {self.name} dropped {len(expired_keys)} expired entries")
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0

        return {
            **self.stats,
            "name": self.name,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._entries),
            "default_ttl": self.default_ttl,
        }
