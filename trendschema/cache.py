"""Artifact cache with single-flight fills and serve-stale-while-revalidate.

This is the only shared mutable state in the engine. All mutation happens on
the event loop thread, and every check-then-act sequence below runs without
an intervening ``await``, so no lock is needed:

- at most one fill per key is in flight; later callers attach to it
- a key's committed version never goes down (the high-water mark survives
  invalidation and eviction)
- a fill commits in one synchronous step or not at all
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from trendschema.config import get_cache_config
from trendschema.errors import FillTimeoutError
from trendschema.models import Artifact, CacheKey, CacheResult, utcnow
from trendschema.store import ArtifactStore

logger = logging.getLogger(__name__)

FillFn = Callable[[Artifact | None, int], Awaitable[Artifact]]
Validator = Callable[[Artifact], bool]

FRESH = "fresh"
STALE = "stale"
EXPIRED = "expired"


@dataclass
class CacheStats:
    hits: int = 0
    stale_served: int = 0
    misses: int = 0
    fills: int = 0
    coalesced: int = 0
    fill_errors: int = 0
    evictions: int = 0


def _same_content(a: Artifact, b: Artifact) -> bool:
    return (
        a.version == b.version
        and a.content_fingerprint == b.content_fingerprint
        and a.trend_fingerprint == b.trend_fingerprint
    )


class ArtifactCache:
    """LRU-capped artifact cache keyed by (client id, URL path)."""

    def __init__(
        self,
        config: dict,
        store: ArtifactStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        cfg = get_cache_config(config)
        self.max_entries = cfg["max_entries"]
        self.grace = timedelta(seconds=cfg["grace_seconds"])
        self.fill_timeout = cfg["fill_timeout_seconds"]
        self.store = store
        self.clock = clock
        self.stats = CacheStats()
        self._entries: OrderedDict[CacheKey, Artifact] = OrderedDict()
        self._high_water: dict[CacheKey, int] = {}
        self._generation: dict[CacheKey, int] = {}
        self._inflight: dict[CacheKey, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def state(self, artifact: Artifact, now: datetime | None = None) -> str:
        now = now or self.clock()
        if now < artifact.expires_at:
            return FRESH
        if now < artifact.expires_at + self.grace:
            return STALE
        return EXPIRED

    def peek(self, key: CacheKey) -> Artifact | None:
        """Current entry regardless of freshness, without touching LRU order."""
        return self._entries.get(key)

    def entries(self, client_id: str | None = None) -> list[Artifact]:
        return [
            a for a in self._entries.values()
            if client_id is None or a.client_id == client_id
        ]

    def in_flight(self, key: CacheKey) -> bool:
        return key in self._inflight

    def high_water(self, key: CacheKey) -> int:
        return self._high_water.get(key, 0)

    def get(self, key: CacheKey) -> Artifact | None:
        """Fresh or in-grace artifact for key, else None."""
        artifact = self._entries.get(key)
        if artifact is None or self.state(artifact) == EXPIRED:
            return None
        self._entries.move_to_end(key)
        return artifact

    async def get_or_fill(
        self,
        key: CacheKey,
        fill_fn: FillFn,
        *,
        timeout: float | None = None,
        force: bool = False,
        is_valid: Validator | None = None,
    ) -> CacheResult:
        """Serve from cache or run (or join) the single fill for key.

        ``force`` skips the lookup and always goes through the fill path;
        ``is_valid`` rejecting the cached artifact forces a synchronous fill.
        Raises whatever the fill raised, or FillTimeoutError.
        """
        artifact = self._entries.get(key)
        if artifact is not None and not force and (is_valid is None or is_valid(artifact)):
            state = self.state(artifact)
            if state == FRESH:
                self._entries.move_to_end(key)
                self.stats.hits += 1
                return CacheResult(artifact, cached=True)
            if state == STALE:
                self._entries.move_to_end(key)
                self.stats.stale_served += 1
                self._refresh_in_background(key, fill_fn)
                return CacheResult(artifact, cached=True, stale=True)

        if not force:
            self.stats.misses += 1
        artifact = await self._join(key, fill_fn, timeout)
        return CacheResult(artifact, cached=False)

    def put(self, key: CacheKey, artifact: Artifact) -> bool:
        """Store an externally built artifact. Older versions are rejected."""
        current = self._entries.get(key)
        if current is not None and _same_content(current, artifact):
            self._store_entry(key, artifact)
            return True
        if artifact.version <= self._high_water.get(key, 0):
            logger.warning(
                "Rejected stale put for %s: v%d <= v%d",
                key, artifact.version, self._high_water.get(key, 0),
            )
            return False
        self._store_entry(key, artifact)
        return True

    def invalidate(self, key: CacheKey) -> bool:
        """Drop the entry. A fill already in flight will not be cached."""
        self._generation[key] = self._generation.get(key, 0) + 1
        removed = self._entries.pop(key, None)
        if self.store is not None:
            self.store.invalidate(key)
        if removed is not None:
            logger.info("Invalidated %s (was v%d)", key, removed.version)
        return removed is not None

    def sweep(self, now: datetime | None = None) -> int:
        """Remove entries whose grace window has passed."""
        now = now or self.clock()
        expired = [k for k, a in self._entries.items() if self.state(a, now) == EXPIRED]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Swept %d expired artifacts", len(expired))
        return len(expired)

    def warm(self) -> int:
        """Repopulate from the durable store after a restart."""
        if self.store is None:
            return 0
        loaded = 0
        for artifact, invalidated in self.store.load():
            key = artifact.key
            self._high_water[key] = max(self._high_water.get(key, 0), artifact.version)
            if invalidated or self.state(artifact) == EXPIRED:
                continue
            self._entries[key] = artifact
            loaded += 1
        self._evict()
        logger.info("Warmed cache with %d artifacts", loaded)
        return loaded

    async def close(self) -> None:
        """Wait for background fills to settle."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- internals ---

    def _store_entry(self, key: CacheKey, artifact: Artifact) -> None:
        # A store failure leaves memory untouched
        if self.store is not None:
            self.store.save(artifact)
        self._entries[key] = artifact
        self._entries.move_to_end(key)
        self._high_water[key] = max(self._high_water.get(key, 0), artifact.version)
        self._evict()

    def _evict(self) -> None:
        while len(self._entries) > self.max_entries:
            key, artifact = self._entries.popitem(last=False)
            self.stats.evictions += 1
            logger.debug("Evicted %s v%d", key, artifact.version)

    async def _join(self, key: CacheKey, fill_fn: FillFn, timeout: float | None) -> Artifact:
        future = self._inflight.get(key)
        if future is None:
            future = self._start_fill(key, fill_fn, timeout)
        else:
            self.stats.coalesced += 1
        try:
            if timeout is None:
                return await asyncio.shield(future)
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except FillTimeoutError:
            raise
        except asyncio.TimeoutError:
            raise FillTimeoutError(f"gave up waiting for {key} after {timeout:.2f}s") from None

    def _start_fill(self, key: CacheKey, fill_fn: FillFn, timeout: float | None) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_consume_exception)
        self._inflight[key] = future
        deadline = self.fill_timeout if timeout is None else min(self.fill_timeout, timeout)
        task = loop.create_task(self._run_fill(key, fill_fn, future, deadline))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats.fills += 1
        return future

    def _refresh_in_background(self, key: CacheKey, fill_fn: FillFn) -> None:
        if key in self._inflight:
            return
        logger.debug("Serving stale %s, refreshing in background", key)
        self._start_fill(key, fill_fn, None)

    async def _run_fill(
        self, key: CacheKey, fill_fn: FillFn, future: asyncio.Future, deadline: float,
    ) -> None:
        previous = self._entries.get(key)
        base_version = self._high_water.get(key, 0)
        generation = self._generation.get(key, 0)
        try:
            artifact = await asyncio.wait_for(fill_fn(previous, base_version), deadline)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except asyncio.TimeoutError:
            self.stats.fill_errors += 1
            logger.warning("Fill for %s timed out after %.2fs", key, deadline)
            future.set_exception(FillTimeoutError(f"fill for {key} exceeded {deadline:.2f}s"))
        except Exception as exc:
            self.stats.fill_errors += 1
            logger.warning("Fill for %s failed: %s: %s", key, type(exc).__name__, exc)
            future.set_exception(exc)
        else:
            try:
                future.set_result(self._commit(key, artifact, generation))
            except Exception as exc:
                self.stats.fill_errors += 1
                logger.exception("Commit for %s failed", key)
                future.set_exception(exc)
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _commit(self, key: CacheKey, artifact: Artifact, generation: int) -> Artifact:
        """Atomically install a fill result, keeping versions monotonic."""
        if self._generation.get(key, 0) != generation:
            logger.info("%s was invalidated during its fill; result not cached", key)
            return artifact
        current = self._entries.get(key)
        if current is not None and _same_content(current, artifact):
            self._store_entry(key, artifact)
            return artifact
        high_water = self._high_water.get(key, 0)
        if artifact.version <= high_water:
            artifact = replace(artifact, version=high_water + 1)
        self._store_entry(key, artifact)
        return artifact


def _consume_exception(future: asyncio.Future) -> None:
    # Background fills may have no waiter left to observe their error.
    if not future.cancelled():
        future.exception()
