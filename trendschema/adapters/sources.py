"""Trend signal sources: the document store inbox and Google Trends RSS."""

from __future__ import annotations

import logging
from calendar import timegm
from datetime import datetime, timezone
from typing import Any

import feedparser

from trendschema.adapters import register_trend_source
from trendschema.adapters.base import BaseTrendSource
from trendschema.db import get_cursor, get_trend_documents_after, set_cursor

logger = logging.getLogger(__name__)

GOOGLE_TRENDS_RSS = "https://trends.google.com/trending/rss?geo={geo}"


@register_trend_source("document_store")
class DocumentStoreSource(BaseTrendSource):
    """Read raw trend documents appended to the store by external producers."""

    batch_size = 1000

    @property
    def name(self) -> str:
        return "document_store"

    def __init__(self, config: dict, conn=None):
        super().__init__(config, conn)
        self._pending_position: int | None = None

    async def fetch(self) -> list[dict[str, Any]]:
        if self.conn is None:
            logger.warning("document_store source has no connection")
            return []
        position = get_cursor(self.conn, self.name)
        docs = []
        while True:
            batch = get_trend_documents_after(self.conn, position, self.batch_size)
            if not batch:
                break
            position = batch[-1][0]
            docs.extend(body for _, body in batch)
        self._pending_position = position
        return docs

    def acknowledge(self) -> None:
        if self._pending_position is not None and self.conn is not None:
            set_cursor(self.conn, self.name, self._pending_position)
            self._pending_position = None


@register_trend_source("google_trends")
class GoogleTrendsSource(BaseTrendSource):
    """Daily trending searches from Google Trends RSS feeds."""

    @property
    def name(self) -> str:
        return "google_trends"

    async def fetch(self) -> list[dict[str, Any]]:
        cfg = self.config.get("trends", {}).get("sources", {}).get("google_trends", {})
        feeds = cfg.get("feeds") or [{"geo": "US"}]
        signals = []

        for feed_cfg in feeds:
            url = feed_cfg.get("url") or GOOGLE_TRENDS_RSS.format(geo=feed_cfg.get("geo", "US"))
            category = feed_cfg.get("category", "general")
            try:
                signals.extend(self._parse_feed(url, category))
            except Exception:
                logger.exception("Failed to fetch trends feed: %s", url)

        logger.info("Google Trends returned %d signals", len(signals))
        return signals

    def _parse_feed(self, url: str, category: str) -> list[dict[str, Any]]:
        feed = feedparser.parse(url)
        signals = []
        for entry in feed.entries:
            title = entry.get("title", "")
            if not title:
                continue

            timestamp = None
            if hasattr(entry, "published_parsed") and entry.published_parsed:
                timestamp = datetime.fromtimestamp(
                    timegm(entry.published_parsed), tz=timezone.utc,
                )

            signals.append({
                "query": title,
                "volume": entry.get("ht_approx_traffic", 0),
                "timestamp": timestamp,
                "category": category,
            })
        return signals
