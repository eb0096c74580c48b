"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from trendschema.adapters.base import BaseContentIndex
from trendschema.config import load_config
from trendschema.db import get_connection, init_db, insert_client, insert_trend_document
from trendschema.engine import build_engine
from trendschema.errors import AdapterUnavailable
from trendschema.models import Client, ContentDocument
from trendschema.urls import normalize_url

T0 = datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)


def unit(cos: float) -> list[float]:
    """2-d unit vector whose cosine with [1, 0] is ``cos``."""
    return [cos, math.sqrt(1 - cos * cos)]


class FakeClock:
    """Manually advanced clock injected wherever components read 'now'."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeContentIndex(BaseContentIndex):
    """In-memory similarity backend with fixed query vectors."""

    def __init__(self, config: dict | None = None, vectors: dict[str, list[float]] | None = None):
        super().__init__(config or {})
        self.vectors = vectors or {}
        self.documents: dict[tuple[str, str], ContentDocument] = {}
        self.failing: set[str] = set()
        self.delay = 0.0
        self.lookup_delay = 0.0
        self.active = 0
        self.max_active = 0
        self.lookups = 0

    @property
    def name(self) -> str:
        return "fake"

    def add(self, doc: ContentDocument) -> ContentDocument:
        self.documents[(doc.client_id, normalize_url(doc.url))] = doc
        return doc

    def _check(self, client_id: str) -> None:
        if client_id in self.failing:
            raise AdapterUnavailable(f"backend down for {client_id}")

    async def _tick(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    async def embed(self, texts: list[str]) -> np.ndarray:
        return np.asarray([self.vectors.get(t, [0.0, 0.0]) for t in texts], dtype=np.float32)

    async def count(self, client_id: str) -> int:
        self._check(client_id)
        return len(self._docs(client_id))

    async def list_documents(self, client_id: str, offset: int, limit: int) -> list[ContentDocument]:
        self._check(client_id)
        await self._tick()
        return self._docs(client_id)[offset:offset + limit]

    async def get_document(self, client_id: str, url: str) -> ContentDocument | None:
        self._check(client_id)
        self.lookups += 1
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        return self.documents.get((client_id, normalize_url(url)))

    def _docs(self, client_id: str) -> list[ContentDocument]:
        return sorted(
            (d for (cid, _), d in self.documents.items() if cid == client_id),
            key=lambda d: normalize_url(d.url),
        )


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no external services)."""
    config_text = """
database:
  path: "DB_PATH_PLACEHOLDER"

trends:
  default_half_life_hours: 24
  expiry_multiplier: 2.0
  sources:
    document_store:
      enabled: true
    google_trends:
      enabled: false

content_index:
  backend: "sqlite"
  page_size: 100

matcher:
  threshold: 0.72
  volume_saturation: 10000
  max_concurrency_per_client: 2

cache:
  max_entries: 100
  grace_seconds: 300
  fill_timeout_seconds: 2
  default_ttl_hours: 6
  persist: true

harvest:
  interval_seconds: 60
  recent_matches: 50

delivery:
  lookup_timeout_seconds: 1
  fill_timeout_seconds: 2
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("DB_PATH_PLACEHOLDER", db_path))
    return load_config(str(cfg_path))


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_index(sample_config):
    return FakeContentIndex(sample_config)


@pytest.fixture
def sale_document():
    """An ecommerce landing page with enough entities for Offer markup."""
    return ContentDocument(
        client_id="clientA",
        url="https://shop.example/sale",
        title="Diwali Sale",
        text="Festive discounts on lamps, sweets and gifts.",
        entities={"price": "19.99", "currency": "INR", "availability": "in_stock"},
        page_type="webpage",
        embedding=[1.0, 0.0],
        last_crawled_at=T0,
    )


def publish_trend(conn, clock, query="Diwali Sale", volume="50K+", category="ecommerce"):
    """Append a raw trend document the way an external producer would."""
    body = {"query": query, "volume": volume, "timestamp": clock().isoformat(), "category": category}
    return insert_trend_document(conn, body, clock())


@pytest.fixture
def engine(sample_config, db_conn, fake_index, clock):
    """Fully wired engine over the test database and the fake similarity backend."""
    insert_client(db_conn, Client(id="clientA", api_key="key-a", name="Shop A"))
    insert_client(db_conn, Client(id="clientB", api_key="key-b", name="Shop B"))
    fake_index.vectors = {"diwali sale": unit(0.9)}
    return build_engine(sample_config, conn=db_conn, index=fake_index, clock=clock)
