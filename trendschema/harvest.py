"""Harvest scheduler: pull trends, match clients, prime and invalidate the cache."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import deque
from datetime import datetime
from typing import Callable

from trendschema.adapters import TREND_SOURCES
from trendschema.adapters.base import BaseTrendSource
from trendschema.adapters.trend_store import TrendStore
from trendschema.cache import ArtifactCache
from trendschema.config import get_active_trend_sources, get_harvest_config
from trendschema.db import finish_run, insert_run, list_active_clients
from trendschema.errors import AdapterUnavailable, FillTimeoutError, SynthesisError
from trendschema.jobs import SynthesisRunner
from trendschema.matcher import Matcher
from trendschema.models import REASON_HARVESTED, HarvestRun, Match, SynthesisJob, utcnow
from trendschema.urls import normalize_url

logger = logging.getLogger(__name__)


class HarvestScheduler:
    """Drive trend store -> matcher -> artifact cache on a fixed interval."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        trend_store: TrendStore,
        matcher: Matcher,
        cache: ArtifactCache,
        runner: SynthesisRunner,
        sources: list[BaseTrendSource] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.conn = conn
        self.trend_store = trend_store
        self.matcher = matcher
        self.cache = cache
        self.runner = runner
        self.clock = clock
        cfg = get_harvest_config(config)
        self.interval = cfg["interval_seconds"]
        if sources is None:
            sources = []
            for name in get_active_trend_sources(config):
                if name not in TREND_SOURCES:
                    logger.warning("Trend source '%s' enabled but not registered", name)
                    continue
                sources.append(TREND_SOURCES[name](config, conn))
        self.sources = sources
        self._recent: deque[Match] = deque(maxlen=cfg["recent_matches"])
        self._lock = asyncio.Lock()

    def recent_matches(self, client_id: str | None = None, limit: int = 50) -> list[Match]:
        """Newest matches first; a read-only view for downstream analysis."""
        found = [m for m in reversed(self._recent) if client_id is None or m.client_id == client_id]
        return found[:limit]

    async def run_cycle(self, client_ids: list[str] | None = None) -> HarvestRun:
        """Run one harvest cycle. Cycles never overlap."""
        async with self._lock:
            return await self._run_cycle(client_ids)

    async def _run_cycle(self, client_ids: list[str] | None) -> HarvestRun:
        run = HarvestRun(started_at=self.clock())
        run_id = insert_run(self.conn, run)
        run.id = run_id
        logger.info("Harvest run #%d started", run_id)

        try:
            run.trends_ingested = await self._pull_trends()
            now = self.clock()
            trends = self.trend_store.active_trends(now)

            clients = [c.id for c in list_active_clients(self.conn)]
            if client_ids:
                wanted = set(client_ids)
                clients = [c for c in clients if c in wanted]
            run.clients_processed = len(clients)

            report = await self.matcher.match_all(clients, trends)
            run.clients_degraded = len(report.degraded)
            run.matches_found = report.total
            for matches in report.matches.values():
                self._recent.extend(reversed(matches))

            results = await asyncio.gather(*[
                self._prime_client(client_id, matches)
                for client_id, matches in report.matches.items()
            ])
            run.artifacts_primed = sum(primed for primed, _ in results)
            run.artifacts_invalidated = sum(dropped for _, dropped in results)

            self.cache.sweep(self.clock())

            run.status = "completed"
            run.finished_at = self.clock()
            finish_run(self.conn, run_id, run)
            logger.info(
                "Harvest run #%d completed: %d trends ingested, %d clients "
                "(%d degraded), %d matches, %d primed, %d invalidated",
                run_id, run.trends_ingested, run.clients_processed,
                run.clients_degraded, run.matches_found,
                run.artifacts_primed, run.artifacts_invalidated,
            )
            return run

        except Exception:
            logger.exception("Harvest run #%d failed", run_id)
            run.status = "failed"
            run.finished_at = self.clock()
            finish_run(self.conn, run_id, run)
            raise

    async def _pull_trends(self) -> int:
        async def _fetch(source: BaseTrendSource) -> list:
            try:
                return await source.fetch()
            except Exception:
                logger.exception("Trend source '%s' failed", source.name)
                return []

        batches = await asyncio.gather(*[_fetch(s) for s in self.sources])
        stored = 0
        for source, signals in zip(self.sources, batches):
            if signals:
                stored += len(self.trend_store.ingest(signals))
            source.acknowledge()
        return stored

    async def _prime_client(self, client_id: str, matches: list[Match]) -> tuple[int, int]:
        """Prime one client's keys; returns (new versions, invalidations)."""
        best: dict[str, Match] = {}
        for match in matches:
            best.setdefault(normalize_url(match.url), match)

        primed = 0
        for url, match in best.items():
            job = SynthesisJob(
                client_id=client_id,
                url=url,
                reason=REASON_HARVESTED,
                trend_id=match.trend_id,
                match=match,
            )
            before = self.cache.high_water(job.key)
            try:
                result = await self.cache.get_or_fill(job.key, self.runner.fill_for(job), force=True)
            except SynthesisError as exc:
                logger.warning("Dropped %s job for %s: %s", job.reason, job.key, exc)
                continue
            except (AdapterUnavailable, FillTimeoutError) as exc:
                logger.warning("Could not prime %s this cycle: %s", job.key, exc)
                continue
            except Exception:
                logger.exception("Unexpected failure priming %s", job.key)
                continue
            if result.artifact.version > before:
                primed += 1

        return primed, self._invalidate_expired(client_id, set(best))

    def _invalidate_expired(self, client_id: str, matched_urls: set[str]) -> int:
        """Drop artifacts whose trend expired and was not matched again."""
        now = self.clock()
        dropped = 0
        for artifact in self.cache.entries(client_id):
            if artifact.url in matched_urls or not artifact.source_trend_id:
                continue
            trend = self.trend_store.get(artifact.source_trend_id)
            expired = (
                self.trend_store.is_expired(trend, now) if trend is not None
                else artifact.expires_at <= now
            )
            if expired and self.cache.invalidate(artifact.key):
                dropped += 1
        return dropped

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Run cycles every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info("Harvest scheduler started (every %.0fs)", self.interval)
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Harvest cycle failed; retrying next interval")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Harvest scheduler stopped")
