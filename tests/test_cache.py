"""Tests for the artifact cache: single-flight, versioning and freshness."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import T0

from trendschema.cache import ArtifactCache
from trendschema.errors import FillTimeoutError, IncompleteDataError
from trendschema.models import Artifact, CacheKey
from trendschema.store import ArtifactStore

KEY = CacheKey("clientA", "/sale")


def _artifact(version=1, expires_at=T0 + timedelta(hours=1), content="c1", url="/sale"):
    return Artifact(
        client_id="clientA",
        url=url,
        payload={"@type": "Offer", "v": version},
        schema_type="offer",
        content_fingerprint=content,
        trend_fingerprint="t1",
        version=version,
        expires_at=expires_at,
        generated_at=T0,
    )


class RecordingFill:
    """Fill function that records calls and can be slowed down or made to fail."""

    def __init__(self, delay=0.0, error=None, content="c1", version=None):
        self.delay = delay
        self.error = error
        self.content = content
        self.version = version
        self.calls = []

    async def __call__(self, previous, base_version):
        self.calls.append((previous, base_version))
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        version = self.version if self.version is not None else base_version + 1
        return _artifact(version=version, content=self.content)


@pytest.fixture
def cache(sample_config, clock):
    return ArtifactCache(sample_config, clock=clock)


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fill(cache):
    fill = RecordingFill(delay=0.05)

    results = await asyncio.gather(*[cache.get_or_fill(KEY, fill) for _ in range(10)])

    assert len(fill.calls) == 1
    assert {r.artifact.version for r in results} == {1}
    assert all(r.cached is False for r in results)
    assert cache.stats.coalesced == 9
    assert cache.peek(KEY).version == 1
    assert not cache.in_flight(KEY)


@pytest.mark.asyncio
async def test_fill_error_reaches_every_waiter_and_is_not_cached(cache):
    fill = RecordingFill(delay=0.02, error=IncompleteDataError("no price", missing=["price"]))

    results = await asyncio.gather(
        *[cache.get_or_fill(KEY, fill) for _ in range(5)], return_exceptions=True,
    )

    assert len(fill.calls) == 1
    assert all(isinstance(r, IncompleteDataError) for r in results)
    assert cache.peek(KEY) is None

    # Nothing was cached, so the next lookup starts a fresh fill
    await cache.get_or_fill(KEY, RecordingFill())
    assert cache.peek(KEY).version == 1


@pytest.mark.asyncio
async def test_fill_deadline_reaches_all_waiters_previous_version_kept(cache):
    cache.put(KEY, _artifact(version=1))
    fill = RecordingFill(delay=5, content="c2")

    results = await asyncio.gather(
        *[cache.get_or_fill(KEY, fill, timeout=0.05, force=True) for _ in range(4)],
        return_exceptions=True,
    )
    await cache.close()

    assert len(fill.calls) == 1
    assert all(isinstance(r, FillTimeoutError) for r in results)
    assert all(isinstance(r, TimeoutError) for r in results)
    assert cache.peek(KEY).version == 1
    assert cache.get(KEY).content_fingerprint == "c1"


@pytest.mark.asyncio
async def test_versions_never_go_backwards(cache):
    assert cache.put(KEY, _artifact(version=3)) is True
    assert cache.put(KEY, _artifact(version=2, content="older")) is False
    assert cache.peek(KEY).version == 3

    result = await cache.get_or_fill(KEY, RecordingFill(version=1, content="c2"), force=True)

    assert result.artifact.version == 4
    assert cache.peek(KEY).version == 4
    assert cache.high_water(KEY) == 4


def test_put_of_same_content_refreshes_in_place(cache):
    first = _artifact(version=1)
    cache.put(KEY, first)
    later = replace(first, expires_at=T0 + timedelta(hours=5))

    assert cache.put(KEY, later) is True
    assert cache.peek(KEY).expires_at == T0 + timedelta(hours=5)


@pytest.mark.asyncio
async def test_invalidate_keeps_high_water_mark(cache):
    cache.put(KEY, _artifact(version=2))
    assert cache.invalidate(KEY) is True
    assert cache.get(KEY) is None
    assert cache.invalidate(KEY) is False

    fill = RecordingFill(content="c2")
    result = await cache.get_or_fill(KEY, fill)

    assert fill.calls == [(None, 2)]
    assert result.artifact.version == 3


@pytest.mark.asyncio
async def test_fill_finishing_after_invalidate_is_not_cached(cache):
    fill = RecordingFill(delay=0.05)
    pending = asyncio.create_task(cache.get_or_fill(KEY, fill))
    await asyncio.sleep(0.01)
    assert cache.in_flight(KEY)

    cache.invalidate(KEY)
    result = await pending

    assert result.artifact.version == 1
    assert cache.peek(KEY) is None


@pytest.mark.asyncio
async def test_fresh_hit_does_not_fill(cache):
    cache.put(KEY, _artifact())
    fill = RecordingFill()

    result = await cache.get_or_fill(KEY, fill)

    assert result.cached is True
    assert result.stale is False
    assert fill.calls == []
    assert cache.stats.hits == 1


@pytest.mark.asyncio
async def test_stale_within_grace_served_while_refreshing(cache):
    cache.put(KEY, _artifact(version=1, expires_at=T0 - timedelta(minutes=1)))
    fill = RecordingFill(delay=0.02, content="c2")

    first = await cache.get_or_fill(KEY, fill)
    second = await cache.get_or_fill(KEY, fill)

    assert (first.cached, first.stale, first.artifact.version) == (True, True, 1)
    assert (second.cached, second.stale) == (True, True)
    await cache.close()

    assert len(fill.calls) == 1
    assert cache.peek(KEY).version == 2
    assert cache.stats.stale_served == 2


@pytest.mark.asyncio
async def test_past_grace_window_fills_synchronously(cache):
    cache.put(KEY, _artifact(version=1, expires_at=T0 - timedelta(minutes=10)))

    result = await cache.get_or_fill(KEY, RecordingFill(content="c2"))

    assert result.cached is False
    assert result.artifact.version == 2


@pytest.mark.asyncio
async def test_failed_validity_check_forces_fill(cache):
    cache.put(KEY, _artifact(version=1, content="c1"))
    fill = RecordingFill(content="c2")

    result = await cache.get_or_fill(KEY, fill, is_valid=lambda a: a.content_fingerprint == "c2")
    again = await cache.get_or_fill(KEY, fill, is_valid=lambda a: a.content_fingerprint == "c2")

    assert (result.cached, result.artifact.version) == (False, 2)
    assert (again.cached, again.artifact.version) == (True, 2)
    assert len(fill.calls) == 1


def test_get_respects_grace_window(cache, clock):
    cache.put(KEY, _artifact(expires_at=T0 + timedelta(minutes=1)))
    assert cache.get(KEY) is not None

    clock.advance(minutes=4)
    assert cache.get(KEY) is not None

    clock.advance(minutes=5)
    assert cache.get(KEY) is None


def test_sweep_removes_only_expired_entries(cache, clock):
    cache.put(KEY, _artifact(expires_at=T0 + timedelta(minutes=1)))
    other = CacheKey("clientA", "/other")
    cache.put(other, _artifact(url="/other", expires_at=T0 + timedelta(hours=2)))

    clock.advance(minutes=30)

    assert cache.sweep() == 1
    assert cache.peek(KEY) is None
    assert cache.peek(other) is not None


def test_lru_eviction(sample_config, clock):
    cache = ArtifactCache({**sample_config, "cache": {"max_entries": 2}}, clock=clock)
    keys = [CacheKey("clientA", f"/p{i}") for i in range(3)]

    cache.put(keys[0], _artifact(url="/p0"))
    cache.put(keys[1], _artifact(url="/p1"))
    cache.get(keys[0])
    cache.put(keys[2], _artifact(url="/p2"))

    assert cache.peek(keys[1]) is None
    assert cache.peek(keys[0]) is not None
    assert cache.stats.evictions == 1
    assert cache.high_water(keys[1]) == 1


def test_entries_filtered_by_client(cache):
    cache.put(KEY, _artifact())
    cache.put(CacheKey("clientB", "/sale"), replace(_artifact(), client_id="clientB"))
    assert [a.client_id for a in cache.entries("clientB")] == ["clientB"]
    assert len(cache.entries()) == 2


def test_warm_restores_entries_and_versions(sample_config, db_conn, clock):
    store = ArtifactStore(db_conn)
    first = ArtifactCache(sample_config, store=store, clock=clock)
    gone = CacheKey("clientA", "/gone")
    first.put(KEY, _artifact(version=3))
    first.put(gone, _artifact(version=5, url="/gone"))
    first.invalidate(gone)

    restarted = ArtifactCache(sample_config, store=store, clock=clock)

    assert restarted.warm() == 1
    assert restarted.peek(KEY).version == 3
    assert restarted.peek(gone) is None
    assert restarted.high_water(gone) == 5


class BrokenStore(ArtifactStore):
    def __init__(self):
        super().__init__(conn=None)

    def save(self, artifact):
        raise RuntimeError("disk full")

    def load(self):
        return []


@pytest.mark.asyncio
async def test_failed_commit_reaches_waiters_and_caches_nothing(sample_config, clock):
    cache = ArtifactCache(sample_config, store=BrokenStore(), clock=clock)
    fill = RecordingFill(delay=0.02)

    results = await asyncio.wait_for(
        asyncio.gather(*[cache.get_or_fill(KEY, fill) for _ in range(3)], return_exceptions=True),
        timeout=1,
    )

    assert len(fill.calls) == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert cache.peek(KEY) is None
    assert cache.high_water(KEY) == 0
    assert not cache.in_flight(KEY)
