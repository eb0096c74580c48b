"""Wire adapters, matcher, synthesizer, cache, scheduler and delivery together."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from trendschema.adapters import CONTENT_INDEXES
from trendschema.adapters.base import BaseContentIndex, BaseTrendSource
from trendschema.adapters.trend_store import TrendStore
from trendschema.cache import ArtifactCache
from trendschema.config import get_cache_config, get_content_index_config, get_db_path
from trendschema.db import get_connection, init_db
from trendschema.deliver.service import DeliveryService
from trendschema.harvest import HarvestScheduler
from trendschema.jobs import SynthesisRunner
from trendschema.matcher import Matcher
from trendschema.models import utcnow
from trendschema.store import ArtifactStore
from trendschema.synthesize.synthesizer import Synthesizer

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: dict
    conn: sqlite3.Connection
    index: BaseContentIndex
    trend_store: TrendStore
    matcher: Matcher
    synthesizer: Synthesizer
    cache: ArtifactCache
    runner: SynthesisRunner
    scheduler: HarvestScheduler
    delivery: DeliveryService

    async def close(self) -> None:
        await self.cache.close()
        self.conn.close()


def build_engine(
    config: dict,
    conn: sqlite3.Connection | None = None,
    index: BaseContentIndex | None = None,
    sources: list[BaseTrendSource] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Engine:
    """Build every component from config; tests inject conn, index, sources, clock."""
    if conn is None:
        db_path = get_db_path(config)
        init_db(db_path)
        conn = get_connection(db_path)

    if index is None:
        backend = get_content_index_config(config)["backend"]
        if backend not in CONTENT_INDEXES:
            raise ValueError(f"Unknown content index backend: {backend}")
        index = CONTENT_INDEXES[backend](config, conn)

    trend_store = TrendStore(config, conn, clock=clock)
    matcher = Matcher(config, index, clock=clock)
    synthesizer = Synthesizer(config, clock=clock)

    store = ArtifactStore(conn) if get_cache_config(config)["persist"] else None
    cache = ArtifactCache(config, store=store, clock=clock)
    cache.warm()

    runner = SynthesisRunner(index, trend_store, matcher, synthesizer)
    scheduler = HarvestScheduler(
        config, conn, trend_store, matcher, cache, runner, sources=sources, clock=clock,
    )
    delivery = DeliveryService(config, conn, index, cache, runner)
    logger.info("Engine ready (content index: %s)", index.name)

    return Engine(
        config=config,
        conn=conn,
        index=index,
        trend_store=trend_store,
        matcher=matcher,
        synthesizer=synthesizer,
        cache=cache,
        runner=runner,
        scheduler=scheduler,
        delivery=delivery,
    )
