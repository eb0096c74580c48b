"""End-to-end harvest cycles: trend ingest, matching, priming and invalidation."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import patch

import pytest
from conftest import publish_trend

from trendschema.adapters.base import BaseTrendSource
from trendschema.db import get_recent_runs, insert_trend_document
from trendschema.engine import build_engine
from trendschema.models import REASON_CACHE_MISS, CacheKey, Client

SALE = CacheKey("clientA", "/sale")


class BrokenSource(BaseTrendSource):
    @property
    def name(self) -> str:
        return "broken"

    async def fetch(self):
        raise RuntimeError("feed is down")


@pytest.mark.asyncio
async def test_matched_trend_primes_offer(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    publish_trend(db_conn, clock)

    run = await engine.scheduler.run_cycle()

    assert run.status == "completed"
    assert run.trends_ingested == 1
    assert run.clients_processed == 2
    assert run.matches_found == 1
    assert run.artifacts_primed == 1

    artifact = engine.cache.peek(SALE)
    assert artifact.version == 1
    assert artifact.schema_type == "offer"
    assert artifact.payload["@type"] == "Offer"
    assert artifact.payload["keywords"] == "diwali sale"

    [match] = engine.scheduler.recent_matches("clientA")
    assert match.score == 0.9
    assert get_recent_runs(db_conn)[0]["artifacts_primed"] == 1


@pytest.mark.asyncio
async def test_unchanged_cycle_creates_no_new_version(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    publish_trend(db_conn, clock)
    await engine.scheduler.run_cycle()

    clock.advance(minutes=5)
    run = await engine.scheduler.run_cycle()

    assert run.trends_ingested == 0
    assert run.matches_found == 1
    assert run.artifacts_primed == 0
    assert engine.cache.peek(SALE).version == 1


@pytest.mark.asyncio
async def test_newer_observation_keeps_version_and_extends_expiry(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    publish_trend(db_conn, clock)
    await engine.scheduler.run_cycle()
    first = engine.cache.peek(SALE)

    clock.advance(hours=6)
    publish_trend(db_conn, clock, volume="80K+")
    run = await engine.scheduler.run_cycle()

    refreshed = engine.cache.peek(SALE)
    assert run.trends_ingested == 1
    assert refreshed.version == 1
    assert refreshed.expires_at > first.expires_at
    assert refreshed.source_trend_id != first.source_trend_id


@pytest.mark.asyncio
async def test_expired_trend_invalidates_then_delivery_refills(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    publish_trend(db_conn, clock)
    await engine.scheduler.run_cycle()

    clock.advance(hours=49)
    run = await engine.scheduler.run_cycle()

    assert run.matches_found == 0
    assert run.artifacts_invalidated == 1
    assert engine.cache.peek(SALE) is None

    client = Client(id="clientA", api_key="key-a")
    with patch.object(engine.runner, "fill_for", wraps=engine.runner.fill_for) as spy:
        served = await engine.delivery.get_schema(client, "/sale")

    assert spy.call_args.args[0].reason == REASON_CACHE_MISS
    assert served.cached is False
    assert served.version == 2
    assert served.schema["@type"] == "WebPage"
    assert "keywords" not in served.schema


@pytest.mark.asyncio
async def test_backend_failure_degrades_only_that_client(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    fake_index.add(replace(sale_document, client_id="clientB"))
    publish_trend(db_conn, clock)
    await engine.scheduler.run_cycle()
    b_key = CacheKey("clientB", "/sale")
    b_before = engine.cache.peek(b_key)
    assert b_before.version == 1

    fake_index.failing.add("clientB")
    fake_index.add(replace(sale_document, text="Extra 10% off today."))
    clock.advance(minutes=5)
    run = await engine.scheduler.run_cycle()

    assert run.clients_degraded == 1
    assert run.status == "completed"
    assert engine.cache.peek(SALE).version == 2
    assert engine.cache.peek(b_key) == b_before

    fake_index.failing.clear()
    clock.advance(minutes=5)
    run = await engine.scheduler.run_cycle()

    assert run.clients_degraded == 0
    assert engine.cache.peek(b_key).version == 1


@pytest.mark.asyncio
async def test_run_cycle_for_selected_clients(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    publish_trend(db_conn, clock)

    run = await engine.scheduler.run_cycle(["clientA", "unknown"])

    assert run.clients_processed == 1


@pytest.mark.asyncio
async def test_incomplete_content_drops_job_without_failing_cycle(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(replace(sale_document, entities={}))
    publish_trend(db_conn, clock)

    run = await engine.scheduler.run_cycle()

    assert run.status == "completed"
    assert run.matches_found == 1
    assert run.artifacts_primed == 0
    assert engine.cache.peek(SALE) is None


@pytest.mark.asyncio
async def test_failing_source_does_not_abort_cycle(sample_config, db_conn, fake_index, clock):
    engine = build_engine(
        sample_config, conn=db_conn, index=fake_index, sources=[BrokenSource(sample_config)], clock=clock,
    )
    run = await engine.scheduler.run_cycle()
    assert run.status == "completed"
    assert run.trends_ingested == 0


@pytest.mark.asyncio
async def test_run_forever_stops_on_event(engine):
    stop = asyncio.Event()
    loop = asyncio.create_task(engine.scheduler.run_forever(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(loop, timeout=1)

    assert len(get_recent_runs(engine.conn)) == 1


@pytest.mark.asyncio
async def test_malformed_trend_document_does_not_block_cycles(engine, db_conn, fake_index, clock, sale_document):
    fake_index.add(sale_document)
    insert_trend_document(db_conn, {"query": "bad", "volume": ".", "category": 5}, clock())
    publish_trend(db_conn, clock)

    first = await engine.scheduler.run_cycle()
    clock.advance(minutes=5)
    second = await engine.scheduler.run_cycle()

    assert first.status == "completed"
    assert first.trends_ingested == 1
    assert engine.cache.peek(SALE).version == 1
    assert second.status == "completed"
    assert second.trends_ingested == 0
