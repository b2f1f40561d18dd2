from __future__ import annotations

import copy
import gzip
import json
import logging
import threading
import time
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .regions import SWEEP_PERIODS, CacheRegion

log = logging.getLogger(__name__)

Lookup = Tuple[Any, bool]
_MISS: Lookup = (None, False)


class CacheBackend(Protocol):
    async def get(self, region: CacheRegion, key: str) -> Lookup: ...

    async def set(self, region: CacheRegion, key: str, value: Any, ttl_sec: int) -> None: ...

    async def delete(self, region: CacheRegion, key: str) -> bool: ...

    async def clear(self, region: CacheRegion) -> int: ...

    async def count(self, region: CacheRegion) -> int: ...


# ---------- In-process ----------
@dataclass
class _Entry:
    value: Any
    expires_at: float


class _Region:
    def __init__(self, sweep_period: float):
        self.entries: Dict[str, _Entry] = {}
        self.lock = threading.Lock()
        self.sweep_period = sweep_period
        self.last_sweep = 0.0


class MemoryBackend:
    """
    Per-region dict of key -> (value, absolute expiry). Expiry is checked lazily
    on read; expired entries are also reclaimed by `sweep`, which runs on `set`
    at most once per region sweep period. Values are deep-copied on the way in
    and out so callers can never mutate a cached entry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._regions: Dict[CacheRegion, _Region] = {
            r: _Region(SWEEP_PERIODS.get(r, 60)) for r in CacheRegion
        }

    async def get(self, region: CacheRegion, key: str) -> Lookup:
        reg = self._regions[region]
        now = self._clock()
        with reg.lock:
            entry = reg.entries.get(key)
            if entry is None:
                return _MISS
            if entry.expires_at <= now:
                del reg.entries[key]
                return _MISS
            return copy.deepcopy(entry.value), True

    async def set(self, region: CacheRegion, key: str, value: Any, ttl_sec: int) -> None:
        reg = self._regions[region]
        now = self._clock()
        with reg.lock:
            reg.entries[key] = _Entry(copy.deepcopy(value), now + float(ttl_sec))
            if now - reg.last_sweep >= reg.sweep_period:
                self._sweep_locked(reg, now)

    async def delete(self, region: CacheRegion, key: str) -> bool:
        reg = self._regions[region]
        with reg.lock:
            return reg.entries.pop(key, None) is not None

    async def clear(self, region: CacheRegion) -> int:
        reg = self._regions[region]
        with reg.lock:
            n = len(reg.entries)
            reg.entries.clear()
            return n

    async def count(self, region: CacheRegion) -> int:
        reg = self._regions[region]
        now = self._clock()
        with reg.lock:
            return sum(1 for e in reg.entries.values() if e.expires_at > now)

    def sweep(self) -> int:
        """Drop expired entries in every region. Returns how many were reclaimed."""
        now = self._clock()
        dropped = 0
        for reg in self._regions.values():
            with reg.lock:
                dropped += self._sweep_locked(reg, now)
        return dropped

    @staticmethod
    def _sweep_locked(reg: _Region, now: float) -> int:
        expired = [k for k, e in reg.entries.items() if e.expires_at <= now]
        for k in expired:
            del reg.entries[k]
        reg.last_sweep = now
        return len(expired)


# ---------- Redis ----------
def _json_default(o: Any):
    if hasattr(o, "model_dump"):
        return o.model_dump(mode="json")
    if isinstance(o, Enum):
        return o.value
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


_BACKEND_ERRORS = (RedisError, RuntimeError, OSError)


class RedisBackend:
    """
    Redis-backed regions. Key: {namespace}{region}:{key}, value: gzip'd JSON
    envelope {"v": value}. TTL is delegated to Redis (SET ... EX).
    Backend faults are logged and reported as a miss / no-op.

    The client must be created with decode_responses=False (bytes payloads).
    """

    def __init__(
        self,
        *,
        client: Redis,
        namespace: str = "cineblend:cache:",
        compression_level: int = 5,
    ) -> None:
        self._r = client
        self._ns = namespace
        self._level = int(compression_level)

    # ----- codec -----
    def _encode(self, value: Any) -> bytes:
        raw = json.dumps(
            {"v": value}, ensure_ascii=False, separators=(",", ":"), default=_json_default
        ).encode("utf-8")
        return gzip.compress(raw, compresslevel=self._level)

    def _decode(self, b: bytes) -> Lookup:
        try:
            payload = json.loads(gzip.decompress(b).decode("utf-8"))
        except (OSError, EOFError, ValueError, zlib.error):
            return _MISS
        if not isinstance(payload, dict) or "v" not in payload:
            return _MISS
        return payload["v"], True

    # ----- keys -----
    def _key(self, region: CacheRegion, key: str) -> str:
        return f"{self._ns}{region.value}:{key}"

    def _pattern(self, region: CacheRegion) -> str:
        return f"{self._ns}{region.value}:*"

    async def get(self, region: CacheRegion, key: str) -> Lookup:
        try:
            b = await self._r.get(self._key(region, key))
        except _BACKEND_ERRORS as e:
            log.warning("cache get %s/%s failed, treating as miss: %s", region.value, key, e)
            return _MISS
        if not b:
            return _MISS
        return self._decode(b)

    async def set(self, region: CacheRegion, key: str, value: Any, ttl_sec: int) -> None:
        try:
            await self._r.set(self._key(region, key), self._encode(value), ex=int(ttl_sec))
        except _BACKEND_ERRORS as e:
            log.warning("cache set %s/%s failed: %s", region.value, key, e)

    async def delete(self, region: CacheRegion, key: str) -> bool:
        try:
            return bool(await self._r.delete(self._key(region, key)))
        except _BACKEND_ERRORS as e:
            log.warning("cache delete %s/%s failed: %s", region.value, key, e)
            return False

    async def clear(self, region: CacheRegion) -> int:
        try:
            keys = [k async for k in self._r.scan_iter(match=self._pattern(region))]
            if not keys:
                return 0
            return int(await self._r.delete(*keys))
        except _BACKEND_ERRORS as e:
            log.warning("cache clear %s failed: %s", region.value, e)
            return 0

    async def count(self, region: CacheRegion) -> int:
        try:
            return len([k async for k in self._r.scan_iter(match=self._pattern(region))])
        except _BACKEND_ERRORS as e:
            log.warning("cache count %s failed: %s", region.value, e)
            return 0
