"""Core data models for the trend-to-schema engine."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

# Reasons a synthesis job can be started for
REASON_HARVESTED = "harvested-match"
REASON_CACHE_MISS = "cache-miss"
REASON_CONTENT_CHANGED = "content-changed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheKey:
    """Artifact cache key: one artifact per (client, URL path)."""

    client_id: str
    url: str

    def __str__(self) -> str:
        return f"{self.client_id}:{self.url}"


@dataclass(frozen=True)
class Trend:
    """A time-decaying search-interest signal. Never mutated once stored."""

    query: str  # normalized
    volume: int
    category: str
    observed_at: datetime
    half_life_hours: float = 24.0
    id: str = ""

    def __post_init__(self):
        if not self.id:
            digest = hashlib.sha256(
                f"{self.query}|{self.observed_at.isoformat()}".encode()
            ).hexdigest()[:16]
            object.__setattr__(self, "id", digest)

    @property
    def half_life(self) -> timedelta:
        return timedelta(hours=self.half_life_hours)

    def age(self, now: datetime) -> timedelta:
        return now - self.observed_at

    def expires_at(self, multiplier: float) -> datetime:
        return self.observed_at + self.half_life * multiplier


@dataclass
class ContentDocument:
    """A crawled page of a client's site. Read-only to this package."""

    client_id: str
    url: str
    title: str = ""
    text: str = ""
    entities: dict[str, Any] = field(default_factory=dict)
    page_type: str = "webpage"  # article, product, event, webpage
    embedding: list[float] = field(default_factory=list)
    last_crawled_at: datetime = field(default_factory=utcnow)


@dataclass
class Match:
    """A scored pairing of a trend to one client URL. Lives for one cycle."""

    trend_id: str
    client_id: str
    url: str
    score: float
    volume: int = 0
    matched_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.client_id, self.url)


@dataclass
class Artifact:
    """A versioned JSON-LD payload ready to be served for one key."""

    client_id: str
    url: str
    payload: dict[str, Any]
    schema_type: str
    content_fingerprint: str
    trend_fingerprint: str
    version: int
    expires_at: datetime
    source_trend_id: str | None = None
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.client_id, self.url)


@dataclass
class SynthesisJob:
    """Transient unit of work; at most one runs per cache key at a time."""

    client_id: str
    url: str
    reason: str  # harvested-match, cache-miss, content-changed
    trend_id: str | None = None
    match: Match | None = None

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.client_id, self.url)


@dataclass
class CacheResult:
    """What a cache lookup produced and whether it came from cache."""

    artifact: Artifact
    cached: bool
    stale: bool = False


@dataclass
class Client:
    """A site that receives synthesized markup."""

    id: str
    api_key: str
    name: str = ""
    active: bool = True


@dataclass
class HarvestRun:
    """Record of a single harvest cycle."""

    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: str = "running"  # running, completed, failed
    trends_ingested: int = 0
    clients_processed: int = 0
    clients_degraded: int = 0
    matches_found: int = 0
    artifacts_primed: int = 0
    artifacts_invalidated: int = 0
    id: int | None = None
