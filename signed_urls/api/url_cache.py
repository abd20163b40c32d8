# Two-tier cache for S3 presigned URLs.
# Keeps URLs stable across repeated API calls so browsers can cache the objects,
# and keeps us under S3 request rate limits. Redis (optional) is read first;
# the local tier is always written and is what keeps working when Redis is down.

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Iterable, Optional, Tuple

from signed_urls.api.errors import InvalidInput
from signed_urls.api.local_cache import LocalCache
from signed_urls.api.redis_cache import RedisCache
from signed_urls.api.signing import OPERATIONS
from signed_urls.shared import CACHE_KEY_NAMESPACE, CacheConfig

log = logging.getLogger(__name__)

TIER_DISTRIBUTED = "distributed"
TIER_LOCAL = "local"


def derive_key(operation: str, bucket: str, path: str) -> str:
    """Cache key for one (operation, bucket, path). Never contains credentials or signatures."""
    return f"{CACHE_KEY_NAMESPACE}:{operation}:{bucket}:{path}"


@dataclass(frozen=True)
class CacheEntry:
    """A presigned URL plus its validity window. Immutable: hits are returned as copies."""

    url: str
    path: str
    bucket: str
    operation: str
    content_type: str
    issued_at: float
    expires_at: float
    from_cache: bool = False
    cache_key: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, blob) -> Optional["CacheEntry"]:
        """Decode a Redis value; None if it is not a well-formed entry."""
        try:
            data = json.loads(blob)
            entry = cls(**data)
            for name in ("url", "path", "bucket", "operation", "content_type"):
                if not isinstance(getattr(entry, name), str):
                    raise TypeError(f"{name} must be a string")
            return replace(
                entry,
                issued_at=float(entry.issued_at),
                expires_at=float(entry.expires_at),
                from_cache=bool(entry.from_cache),
            )
        except (TypeError, ValueError) as e:
            log.warning(f"Discarding undecodable cache entry: {e}")
            return None


class CacheService:
    """
    Facade over the local and (optional) Redis tiers.

    Lifecycle is explicit: construct once at startup, ``await start()`` to
    connect Redis and begin the background sweep, ``await close()`` on shutdown.
    """

    def __init__(
        self,
        config: CacheConfig,
        *,
        local: Optional[LocalCache] = None,
        distributed: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._clock = clock
        self.local = local if local is not None else LocalCache(maxsize=config.max_entries, timer=clock)
        if distributed is None and config.redis_url:
            distributed = RedisCache.from_url(
                config.redis_url,
                max_retries=config.redis_max_retries,
                timeout=config.redis_timeout_seconds,
            )
        self.distributed = distributed
        self._hits = 0
        self._misses = 0
        self._maintenance_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self.distributed is not None:
            await self.distributed.connect()
        else:
            log.info("No Redis URL configured, signed URL cache is local-only")
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def close(self) -> None:
        for task in (self._maintenance_task, self._reconnect_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._maintenance_task = None
        self._reconnect_task = None
        if self.distributed is not None:
            await self.distributed.close()
        self.local.flush_all()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                removed = self.local.expire()
                if removed:
                    log.debug(f"Cache sweep removed {removed} expired entries")
                self.probe()
            except Exception:
                log.exception("Cache maintenance pass failed")

    # -- health ------------------------------------------------------------

    def _distributed_up(self) -> bool:
        return self.distributed is not None and self.distributed.is_available()

    def distributed_status(self) -> str:
        return "connected" if self._distributed_up() else "disconnected"

    async def reconnect(self) -> bool:
        """Explicitly retry the Redis connection (bounded by the adapter's retry budget)."""
        if self.distributed is None:
            return False
        return await self.distributed.connect()

    def probe(self) -> str:
        """Health probe: schedule a background reconnect if Redis is configured but down."""
        if self.distributed is not None and not self.distributed.is_available():
            if self._reconnect_task is None or self._reconnect_task.done():
                self._reconnect_task = asyncio.create_task(self.reconnect())
        return self.distributed_status()

    # -- freshness ---------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry) -> bool:
        remaining = entry.expires_at - self._clock()
        return remaining > self.config.safety_buffer_seconds

    def _effective_ttl(self, entry: CacheEntry, ttl_seconds: float) -> float:
        # Never keep an entry around longer than its signature is valid.
        remaining = entry.expires_at - self._clock()
        return max(1.0, min(float(ttl_seconds), remaining))

    async def _evict(self, *keys: str) -> None:
        for key in keys:
            self.local.delete(key)
        if self.distributed is None:
            return
        if not self.distributed.is_available():
            # Redis may still hold these keys and serve them again after reconnecting.
            log.warning(f"Redis unavailable, evicted {len(keys)} keys from the local tier only")
            return
        await self.distributed.delete(*keys)

    # -- single-key operations ---------------------------------------------

    async def _lookup(self, key: str) -> Tuple[Optional[CacheEntry], Optional[str]]:
        if self._distributed_up():
            blob = await self.distributed.get(key)
            if blob is not None:
                entry = CacheEntry.from_json(blob)
                if entry is not None:
                    return entry, TIER_DISTRIBUTED
        entry = self.local.get(key)
        if entry is not None:
            return entry, TIER_LOCAL
        return None, None

    async def read(self, operation: str, bucket: str, path: str) -> Optional[CacheEntry]:
        key = derive_key(operation, bucket, path)
        entry, tier = await self._lookup(key)
        if entry is None:
            self._misses += 1
            log.debug("cache miss", extra={"cache_key": key})
            return None
        if not self._is_fresh(entry):
            await self._evict(key)
            self._misses += 1
            log.info("cache entry inside expiry safety buffer, evicted", extra={"cache_key": key, "tier": tier})
            return None
        self._hits += 1
        log.debug("cache hit", extra={"cache_key": key, "tier": tier})
        return replace(entry, from_cache=True)

    def _prepare(self, key: str, entry: CacheEntry, ttl_seconds: float) -> Tuple[CacheEntry, float]:
        stored = replace(entry, from_cache=False, cache_key=key)
        return stored, self._effective_ttl(stored, ttl_seconds)

    async def write(self, operation: str, bucket: str, path: str, entry: CacheEntry, ttl_seconds: float) -> None:
        key = derive_key(operation, bucket, path)
        stored, ttl = self._prepare(key, entry, ttl_seconds)
        self.local.set(key, stored, ttl)
        if self._distributed_up():
            await self.distributed.set_with_expiry(key, stored.to_json(), int(ttl))

    async def invalidate(self, operation: str, bucket: str, path: str) -> None:
        key = derive_key(operation, bucket, path)
        await self._evict(key)
        log.info("cache invalidated", extra={"cache_key": key})

    async def invalidate_path(self, path: str, bucket: str) -> None:
        """Invalidate every operation kind cached for one object."""
        await self._evict(*(derive_key(op, bucket, path) for op in OPERATIONS))
        log.info(f"cache invalidated for all operations bucket={bucket} path={path}")

    async def invalidate_by_pattern(self, substring: str) -> int:
        """
        Delete every resident key containing *substring* (plain substring match, not glob/regex).
        Returns how many local entries were deleted; the Redis scan is best-effort.
        """
        if not substring:
            raise InvalidInput("Invalidation pattern must not be empty")
        deleted = 0
        for key in self.local.list_keys():
            if substring in key and self.local.delete(key):
                deleted += 1
        remote = 0
        if self.distributed is not None:
            remote = await self.distributed.delete_matching(substring)
        log.info(f"cache pattern invalidation pattern={substring!r} local_deleted={deleted} redis_deleted={remote}")
        return deleted

    # -- batch operations --------------------------------------------------

    async def read_batch(self, requests: Iterable[Tuple[str, str, str]]) -> dict[str, Optional[CacheEntry]]:
        """
        Look up many (operation, bucket, path) tuples. One Redis MGET when available,
        then the local tier fills the remaining misses. Keys map to a fresh entry or None.
        """
        keys = list(dict.fromkeys(derive_key(*r) for r in requests))
        found: dict[str, Tuple[CacheEntry, str]] = {}

        if self._distributed_up():
            blobs = await self.distributed.mget(keys)
            if blobs is not None:
                for key, blob in zip(keys, blobs):
                    if blob is None:
                        continue
                    entry = CacheEntry.from_json(blob)
                    if entry is not None:
                        found[key] = (entry, TIER_DISTRIBUTED)

        for key in keys:
            if key not in found:
                entry = self.local.get(key)
                if entry is not None:
                    found[key] = (entry, TIER_LOCAL)

        results: dict[str, Optional[CacheEntry]] = {}
        stale = []
        for key in keys:
            hit = found.get(key)
            if hit is not None and self._is_fresh(hit[0]):
                self._hits += 1
                results[key] = replace(hit[0], from_cache=True)
                continue
            if hit is not None:
                stale.append(key)
            self._misses += 1
            results[key] = None
        if stale:
            await self._evict(*stale)
            log.info(f"batch read evicted {len(stale)} entries inside expiry safety buffer")
        return results

    async def write_batch(self, items: Iterable[Tuple[str, CacheEntry, float]]) -> None:
        """
        Write (key, entry, ttl) items. Every item lands in the local tier first;
        Redis gets one pipeline, and per-entry writes if the pipeline fails.
        """
        prepared = []
        for key, entry, ttl_seconds in items:
            stored, ttl = self._prepare(key, entry, ttl_seconds)
            self.local.set(key, stored, ttl)
            prepared.append((key, stored.to_json(), int(ttl)))

        if not prepared or not self._distributed_up():
            return
        if await self.distributed.set_many(prepared):
            return
        log.warning(f"Redis pipeline write failed for {len(prepared)} entries, retrying one by one")
        for key, blob, ttl in prepared:
            await self.distributed.set_with_expiry(key, blob, ttl)

    # -- stats -------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "local": self.local.stats(),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "distributed_status": self.distributed_status(),
        }
