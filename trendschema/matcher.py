"""Relevance scoring of trends against a client's content corpus."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import numpy as np
from scipy.spatial.distance import cdist

from trendschema.adapters.base import BaseContentIndex
from trendschema.config import get_content_index_config, get_matcher_config
from trendschema.errors import AdapterUnavailable
from trendschema.models import ContentDocument, Match, Trend, utcnow

logger = logging.getLogger(__name__)

SCORE_DECIMALS = 6


def volume_weight(volume: int, saturation: int) -> float:
    """Log-scaled search volume in [0, 1]; volumes at or past saturation weigh 1."""
    if volume <= 0:
        return 0.0
    return min(1.0, math.log10(1 + volume) / math.log10(1 + max(saturation, 1)))


def recency_decay(trend: Trend, now: datetime) -> float:
    """exp(-age / half_life); a trend observed in the future counts as fresh."""
    age = max(trend.age(now).total_seconds(), 0.0)
    half_life = trend.half_life.total_seconds()
    if half_life <= 0:
        return 0.0
    return math.exp(-age / half_life)


def cosine_similarities(vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one vector against every row of a matrix.

    Zero vectors have no direction and score 0 against everything.
    """
    if matrix.size == 0:
        return np.zeros(0)
    with np.errstate(invalid="ignore", divide="ignore"):
        sims = 1.0 - cdist(vector.reshape(1, -1), matrix, metric="cosine")[0]
    sims = np.nan_to_num(sims, nan=0.0)
    sims[np.linalg.norm(matrix, axis=1) == 0] = 0.0
    if not np.any(vector):
        sims[:] = 0.0
    return sims


@dataclass
class MatchReport:
    """Outcome of one fan-out across clients."""

    matches: dict[str, list[Match]] = field(default_factory=dict)
    degraded: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(m) for m in self.matches.values())


class Matcher:
    """Score trends against client documents and keep matches above threshold."""

    def __init__(
        self,
        config: dict,
        index: BaseContentIndex,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.index = index
        self.clock = clock
        cfg = get_matcher_config(config)
        self.threshold = cfg["threshold"]
        self.volume_saturation = cfg["volume_saturation"]
        self.max_concurrency = cfg["max_concurrency_per_client"]
        self.page_size = get_content_index_config(config)["page_size"]
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def _semaphore(self, client_id: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(client_id)
        if sem is None:
            sem = self._semaphores[client_id] = asyncio.Semaphore(self.max_concurrency)
        return sem

    async def _limited(self, client_id: str, coro):
        """Run one backend call under the client's concurrency cap."""
        async with self._semaphore(client_id):
            return await coro

    def composite_score(self, similarity: float, trend: Trend, now: datetime) -> float:
        weight = volume_weight(trend.volume, self.volume_saturation) * recency_decay(trend, now)
        score = max(similarity, 0.0) * weight
        return round(min(score, 1.0), SCORE_DECIMALS)

    def rank(
        self,
        trend: Trend,
        trend_vector: np.ndarray,
        documents: list[ContentDocument],
        now: datetime | None = None,
        matrix: np.ndarray | None = None,
    ) -> list[Match]:
        """Matches for one trend, best first, only those scoring >= threshold."""
        now = now or self.clock()
        docs = [d for d in documents if d.embedding] if matrix is None else documents
        if not docs:
            return []
        if matrix is None:
            matrix = np.asarray([d.embedding for d in docs], dtype=np.float32)

        sims = cosine_similarities(np.asarray(trend_vector, dtype=np.float32), matrix)
        matches = []
        for doc, sim in zip(docs, sims):
            score = self.composite_score(float(sim), trend, now)
            if score >= self.threshold:
                matches.append(
                    Match(
                        trend_id=trend.id,
                        client_id=doc.client_id,
                        url=doc.url,
                        score=score,
                        volume=trend.volume,
                        matched_at=now,
                    )
                )
        return sort_matches(matches)

    async def score(self, trend: Trend, documents: list[ContentDocument]) -> list[Match]:
        """Embed the trend query and rank it against the given documents."""
        vectors = await self.index.embed([trend.query])
        return await asyncio.to_thread(self.rank, trend, vectors[0], documents)

    async def _load_documents(self, client_id: str) -> list[ContentDocument]:
        total = await self._limited(client_id, self.index.count(client_id))
        pages = await asyncio.gather(*[
            self._limited(client_id, self.index.list_documents(client_id, offset, self.page_size))
            for offset in range(0, total, self.page_size)
        ])
        return [doc for page in pages for doc in page]

    async def match_client(self, client_id: str, trends: list[Trend]) -> list[Match]:
        """All above-threshold matches of the given trends for one client."""
        if not trends:
            return []
        documents = await self._load_documents(client_id)
        usable = [d for d in documents if d.embedding]
        if len(usable) < len(documents):
            logger.info(
                "Client %s: skipping %d documents without embeddings",
                client_id, len(documents) - len(usable),
            )
        if not usable:
            return []

        vectors = await self._limited(client_id, self.index.embed([t.query for t in trends]))
        now = self.clock()

        def _rank_all() -> list[Match]:
            matrix = np.asarray([d.embedding for d in usable], dtype=np.float32)
            found = []
            for trend, vector in zip(trends, vectors):
                found.extend(self.rank(trend, vector, usable, now=now, matrix=matrix))
            return sort_matches(found)

        return await asyncio.to_thread(_rank_all)

    async def match_all(self, client_ids: list[str], trends: list[Trend]) -> MatchReport:
        """Fan out across clients; an unreachable backend only degrades that client."""
        report = MatchReport()

        async def _one(client_id: str) -> None:
            try:
                report.matches[client_id] = await self.match_client(client_id, trends)
            except AdapterUnavailable as exc:
                logger.warning("Client %s degraded this cycle: %s", client_id, exc)
                report.degraded.append(client_id)
            except Exception:
                logger.exception("Matching failed for client %s", client_id)
                report.degraded.append(client_id)

        await asyncio.gather(*[_one(cid) for cid in client_ids])
        report.degraded.sort()
        logger.info(
            "Matched %d trends across %d clients: %d matches, %d degraded",
            len(trends), len(client_ids), report.total, len(report.degraded),
        )
        return report


def sort_matches(matches: list[Match]) -> list[Match]:
    """Score desc, then larger search volume, then URL."""
    return sorted(matches, key=lambda m: (-m.score, -m.volume, m.url))
