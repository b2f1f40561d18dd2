from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Mapping

from pydantic import BaseModel

from .backends import CacheBackend, Lookup, MemoryBackend
from .regions import DEFAULT_TTLS, USER_SCOPED_REGIONS, CacheRegion, as_region

log = logging.getLogger(__name__)


class CacheStats(BaseModel):
    hits: int
    misses: int
    invalidations: int
    per_region_key_counts: Dict[str, int]
    total_keys: int
    hit_rate: float | None  # None until the first lookup


class CacheLayer:
    """
    Region-partitioned key/value cache with per-region TTLs and shared
    hit/miss/invalidation counters.

    Entries are best-effort derived state: a backend fault is a miss on `get`
    and a no-op on `set`, never an error for the caller. Writers that change a
    user's ratings or collections must call `invalidate_user` before they
    report success.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        ttls: Mapping[CacheRegion | str, int] | None = None,
    ):
        self.backend = backend or MemoryBackend()
        self._ttls: Dict[CacheRegion, int] = dict(DEFAULT_TTLS)
        for region, ttl in (ttls or {}).items():
            self._ttls[as_region(region)] = int(ttl)
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def ttl_for(self, region: CacheRegion | str) -> int:
        return self._ttls[as_region(region)]

    async def get(self, region: CacheRegion | str, key: Any) -> Lookup:
        reg = as_region(region)
        try:
            value, found = await self.backend.get(reg, str(key))
        except Exception as e:
            log.warning("cache get %s/%s failed, treating as miss: %r", reg.value, key, e)
            value, found = None, False
        with self._stats_lock:
            if found:
                self._hits += 1
            else:
                self._misses += 1
        log.debug("cache %s: %s/%s", "hit" if found else "miss", reg.value, key)
        return value, found

    async def set(
        self,
        region: CacheRegion | str,
        key: Any,
        value: Any,
        ttl_override: int | None = None,
    ) -> None:
        reg = as_region(region)
        ttl = int(ttl_override) if ttl_override is not None else self._ttls[reg]
        try:
            await self.backend.set(reg, str(key), value, ttl)
        except Exception as e:
            log.warning("cache set %s/%s failed: %r", reg.value, key, e)

    async def invalidate(self, region: CacheRegion | str, key: Any) -> None:
        reg = as_region(region)
        await self.backend.delete(reg, str(key))
        with self._stats_lock:
            self._invalidations += 1
        log.debug("cache invalidated: %s/%s", reg.value, key)

    async def invalidate_region(self, region: CacheRegion | str) -> int:
        reg = as_region(region)
        dropped = await self.backend.clear(reg)
        with self._stats_lock:
            self._invalidations += 1
        log.info("cache region %s cleared (%d keys)", reg.value, dropped)
        return dropped

    async def invalidate_user(self, user_id: Any) -> None:
        """Drop everything derived from a user's ratings / collections."""
        for region in USER_SCOPED_REGIONS:
            await self.invalidate(region, user_id)

    async def clear_all(self) -> None:
        for region in CacheRegion:
            await self.backend.clear(region)
        log.info("all cache regions cleared")

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._hits = self._misses = self._invalidations = 0

    async def stats(self) -> CacheStats:
        counts = {r.value: await self.backend.count(r) for r in CacheRegion}
        with self._stats_lock:
            hits, misses, inv = self._hits, self._misses, self._invalidations
        lookups = hits + misses
        return CacheStats(
            hits=hits,
            misses=misses,
            invalidations=inv,
            per_region_key_counts=counts,
            total_keys=sum(counts.values()),
            hit_rate=round(hits / lookups, 4) if lookups else None,
        )
