"""HTTP surface: schema delivery, harvest trigger and read-only views."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from trendschema.engine import Engine, build_engine

logger = logging.getLogger(__name__)


class SchemaResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payload: dict[str, Any] | None = Field(default=None, alias="schema")
    cached: bool = False
    version: int | None = None


class HarvestTrigger(BaseModel):
    client_ids: list[str] | None = None


class HarvestSummary(BaseModel):
    id: int | None
    status: str
    started_at: datetime
    finished_at: datetime | None
    trends_ingested: int
    clients_processed: int
    clients_degraded: int
    matches_found: int
    artifacts_primed: int
    artifacts_invalidated: int


class MatchOut(BaseModel):
    trend_id: str
    client_id: str
    url: str
    score: float
    volume: int
    matched_at: datetime


router = APIRouter()


def _engine(request: Request) -> Engine:
    return request.app.state.engine


@router.get("/schema", response_model=SchemaResponse, tags=["Delivery"])
async def get_schema(
    request: Request,
    url: str = Query(""),
    client_key: str | None = Query(None, alias="clientKey"),
):
    """JSON-LD for one page of a client site, or ``schema: null``."""
    if not client_key:
        raise HTTPException(status_code=400, detail="clientKey is required")
    engine = _engine(request)
    client = engine.delivery.resolve_client(client_key)
    if client is None:
        raise HTTPException(status_code=401, detail="Unknown or inactive clientKey")

    result = await engine.delivery.get_schema(client, url)
    return SchemaResponse(payload=result.schema, cached=result.cached, version=result.version)


@router.post("/internal/harvest", response_model=HarvestSummary, tags=["Harvest"])
async def trigger_harvest(request: Request, body: HarvestTrigger | None = Body(None)):
    client_ids = body.client_ids if body else None
    try:
        run = await _engine(request).scheduler.run_cycle(client_ids)
    except Exception:
        raise HTTPException(status_code=503, detail="Harvest cycle failed")
    return HarvestSummary(
        id=run.id,
        status=run.status,
        started_at=run.started_at,
        finished_at=run.finished_at,
        trends_ingested=run.trends_ingested,
        clients_processed=run.clients_processed,
        clients_degraded=run.clients_degraded,
        matches_found=run.matches_found,
        artifacts_primed=run.artifacts_primed,
        artifacts_invalidated=run.artifacts_invalidated,
    )


@router.get("/matches/recent", response_model=list[MatchOut], tags=["Harvest"])
async def recent_matches(
    request: Request,
    client_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    matches = _engine(request).scheduler.recent_matches(client_id, limit)
    return [
        MatchOut(
            trend_id=m.trend_id,
            client_id=m.client_id,
            url=m.url,
            score=m.score,
            volume=m.volume,
            matched_at=m.matched_at,
        )
        for m in matches
    ]


@router.get("/health", tags=["General"])
async def health(request: Request):
    engine = _engine(request)
    stats = engine.cache.stats
    return {
        "status": "ok",
        "content_index": engine.index.name,
        "cached_artifacts": len(engine.cache),
        "cache": {
            "hits": stats.hits,
            "stale_served": stats.stale_served,
            "misses": stats.misses,
            "fills": stats.fills,
            "coalesced": stats.coalesced,
            "fill_errors": stats.fill_errors,
            "evictions": stats.evictions,
        },
    }


def create_app(
    config: dict,
    engine: Engine | None = None,
    run_scheduler: bool = False,
) -> FastAPI:
    """Build the app. Pass ``engine`` to reuse pre-built components (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        app.state.engine = engine or build_engine(config)
        stop = asyncio.Event()
        loop_task = None
        if run_scheduler:
            loop_task = asyncio.create_task(app.state.engine.scheduler.run_forever(stop))
        logger.info("Delivery API started")

        yield

        stop.set()
        if loop_task is not None:
            await loop_task
        if owned:
            await app.state.engine.close()
        logger.info("Delivery API stopped")

    app = FastAPI(title="trendschema", version="0.1.0", lifespan=lifespan)
    if engine is not None:
        app.state.engine = engine

    # Schemas are fetched cross-origin from client pages
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
