"""Delivery: serve cached markup, synthesizing on demand when nothing is primed."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from trendschema.adapters.base import BaseContentIndex
from trendschema.cache import ArtifactCache
from trendschema.config import get_delivery_config
from trendschema.db import get_client_by_key
from trendschema.errors import AdapterUnavailable, FillTimeoutError, SynthesisError
from trendschema.jobs import SynthesisRunner
from trendschema.models import (
    REASON_CACHE_MISS,
    REASON_CONTENT_CHANGED,
    Artifact,
    CacheKey,
    Client,
    SynthesisJob,
)
from trendschema.synthesize.fingerprint import content_fingerprint
from trendschema.urls import normalize_url

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """What the endpoint returns for one page request."""

    schema: dict[str, Any] | None = None
    cached: bool = False
    version: int | None = None

    @classmethod
    def of(cls, artifact: Artifact, cached: bool) -> Delivery:
        return cls(schema=artifact.payload, cached=cached, version=artifact.version)


EMPTY = Delivery()


class DeliveryService:
    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        index: BaseContentIndex,
        cache: ArtifactCache,
        runner: SynthesisRunner,
    ):
        self.conn = conn
        self.index = index
        self.cache = cache
        self.runner = runner
        cfg = get_delivery_config(config)
        self.lookup_timeout = cfg["lookup_timeout_seconds"]
        self.fill_timeout = cfg["fill_timeout_seconds"]

    def resolve_client(self, client_key: str) -> Client | None:
        client = get_client_by_key(self.conn, client_key)
        if client is None or not client.active:
            return None
        return client

    async def get_schema(self, client: Client, url: str) -> Delivery:
        """Never raises for downstream failures: the worst case is an empty schema."""
        path = normalize_url(url)
        if not path:
            return EMPTY
        key = CacheKey(client.id, path)

        reason = REASON_CACHE_MISS
        is_valid = None
        try:
            document = await asyncio.wait_for(
                self.index.get_document(client.id, path), self.lookup_timeout,
            )
        except (AdapterUnavailable, asyncio.TimeoutError) as exc:
            # Skip the fingerprint check; the fill repeats the lookup under its own deadline
            logger.warning("Content lookup for %s unavailable (%r), serving from cache", key, exc)
        else:
            if document is None:
                logger.debug("No content document for %s", key)
                return EMPTY
            fingerprint = content_fingerprint(document)
            current = self.cache.peek(key)
            if current is not None and current.content_fingerprint != fingerprint:
                reason = REASON_CONTENT_CHANGED

            def is_valid(artifact: Artifact) -> bool:
                return artifact.content_fingerprint == fingerprint

        job = SynthesisJob(client_id=client.id, url=path, reason=reason)

        try:
            result = await self.cache.get_or_fill(
                key,
                self.runner.fill_for(job),
                timeout=self.fill_timeout,
                is_valid=is_valid,
            )
        except SynthesisError as exc:
            logger.warning("Serving empty schema for %s, %s job dropped: %s", key, reason, exc)
            return EMPTY
        except (AdapterUnavailable, FillTimeoutError) as exc:
            logger.warning("Serving empty schema for %s: %s", key, exc)
            return EMPTY
        except Exception:
            logger.exception("Unexpected failure serving %s", key)
            return EMPTY

        return Delivery.of(result.artifact, cached=result.cached)
