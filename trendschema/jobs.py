"""Turn synthesis jobs into cache fill functions."""

from __future__ import annotations

import logging

from trendschema.adapters.base import BaseContentIndex
from trendschema.adapters.trend_store import TrendStore
from trendschema.cache import FillFn
from trendschema.errors import IncompleteDataError
from trendschema.matcher import Matcher
from trendschema.models import (
    REASON_HARVESTED,
    Artifact,
    ContentDocument,
    Match,
    SynthesisJob,
    Trend,
)
from trendschema.synthesize.synthesizer import Synthesizer

logger = logging.getLogger(__name__)


class SynthesisRunner:
    """Resolve a job's inputs and hand them to the synthesizer."""

    def __init__(
        self,
        index: BaseContentIndex,
        trend_store: TrendStore,
        matcher: Matcher,
        synthesizer: Synthesizer,
    ):
        self.index = index
        self.trend_store = trend_store
        self.matcher = matcher
        self.synthesizer = synthesizer

    def fill_for(self, job: SynthesisJob) -> FillFn:
        async def fill(previous: Artifact | None, base_version: int) -> Artifact:
            document = await self.index.get_document(job.client_id, job.url)
            if document is None:
                raise IncompleteDataError(f"no content document for {job.key}", missing=["document"])

            if job.reason == REASON_HARVESTED:
                match = job.match
                trend = self.trend_store.get(job.trend_id) if job.trend_id else None
            else:
                match, trend = await self._resolve_trend(document, previous)

            logger.debug("Running %s job for %s", job.reason, job.key)
            return self.synthesizer.synthesize(
                match, document, trend, previous=previous, base_version=base_version,
            )

        return fill

    async def _resolve_trend(
        self, document: ContentDocument, previous: Artifact | None,
    ) -> tuple[Match | None, Trend | None]:
        """Keep the previous trend while it lives, else pick the best active one."""
        if previous is not None and previous.source_trend_id:
            trend = self.trend_store.get(previous.source_trend_id)
            if trend is not None and not self.trend_store.is_expired(trend):
                return None, trend
        return await self.best_trend(document)

    async def best_trend(self, document: ContentDocument) -> tuple[Match | None, Trend | None]:
        """Highest-scoring active trend for one page, if any clears the threshold."""
        trends = self.trend_store.active_trends()
        if not trends or not document.embedding:
            return None, None

        vectors = await self.index.embed([t.query for t in trends])
        best: tuple[Match, Trend] | None = None
        for trend, vector in zip(trends, vectors):
            matches = self.matcher.rank(trend, vector, [document])
            if not matches:
                continue
            top = matches[0]
            if best is None or (top.score, top.volume) > (best[0].score, best[0].volume):
                best = (top, trend)
        return best if best else (None, None)
