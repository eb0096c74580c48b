"""Trend Store Adapter: normalize, deduplicate and append trend signals."""

from __future__ import annotations

import logging
import math
import re
import sqlite3
import unicodedata
from datetime import datetime, timezone
from typing import Any, Callable

from trendschema.config import get_trend_config
from trendschema.db import get_latest_trend, get_latest_trends, get_trend, insert_trend
from trendschema.models import Trend, utcnow

logger = logging.getLogger(__name__)

_PUNCT = re.compile(r"[^\w\s'&-]+")
_LOOSE_MARKS = re.compile(r"(?<!\w)['&-]+|['&-]+(?!\w)")
_SPACES = re.compile(r"\s+")
_VOLUME = re.compile(r"([\d.,]+)\s*([kmb])?", re.IGNORECASE)
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}

# Raised by to_trend for documents of the wrong shape
MALFORMED = (TypeError, ValueError, AttributeError, OverflowError, OSError)


def normalize_query(text: str) -> str:
    """Canonical form of a search query used for dedup and supersession."""
    text = unicodedata.normalize("NFKC", text or "").lower()
    text = _PUNCT.sub(" ", text)
    text = _LOOSE_MARKS.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def parse_volume(value: Any) -> int:
    """Parse volume estimates like 50000, "50,000+" or "2K+"."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    match = _VOLUME.search(str(value or ""))
    if not match:
        return 0
    number = float(match.group(1).replace(",", "") or 0)
    suffix = (match.group(2) or "").lower()
    return int(number * _MULTIPLIERS.get(suffix, 1))


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable trend timestamp %r, using now", value)
            return default
    else:
        return default
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class TrendStore:
    """Owns Trend records. Records are appended, never updated."""

    def __init__(
        self,
        config: dict,
        conn: sqlite3.Connection,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.conn = conn
        self.clock = clock
        cfg = get_trend_config(config)
        self.default_half_life_hours = cfg["default_half_life_hours"]
        self.expiry_multiplier = cfg["expiry_multiplier"]

    def to_trend(self, signal: dict[str, Any], now: datetime | None = None) -> Trend | None:
        """Build a Trend from a raw document, or None if it has no query.

        Raises one of MALFORMED for fields of the wrong type or range.
        """
        query = normalize_query(signal.get("query", ""))
        if not query:
            return None
        half_life_hours = float(signal.get("half_life_hours") or self.default_half_life_hours)
        if not math.isfinite(half_life_hours) or half_life_hours <= 0:
            raise ValueError(f"half_life_hours must be positive, got {half_life_hours}")
        return Trend(
            query=query,
            volume=parse_volume(signal.get("volume")),
            category=str(signal.get("category") or "general").strip().lower(),
            observed_at=_parse_timestamp(signal.get("timestamp"), now or self.clock()),
            half_life_hours=half_life_hours,
        )

    def ingest(self, signals: list[dict[str, Any]], now: datetime | None = None) -> list[Trend]:
        """Store new observations. Returns the records actually appended."""
        now = now or self.clock()
        newest: dict[str, Trend] = {}
        for signal in signals:
            try:
                trend = self.to_trend(signal, now)
            except MALFORMED as exc:
                logger.warning("Skipping malformed trend document %r: %s", signal, exc)
                continue
            if trend is None:
                continue
            seen = newest.get(trend.query)
            if seen is None or (trend.observed_at, trend.volume) > (seen.observed_at, seen.volume):
                newest[trend.query] = trend

        stored = []
        for trend in newest.values():
            latest = get_latest_trend(self.conn, trend.query)
            if latest and _same_observation(latest, trend):
                continue
            if latest and trend.observed_at < latest.observed_at:
                logger.debug("Ignoring out-of-order observation for '%s'", trend.query)
                continue
            if insert_trend(self.conn, trend):
                stored.append(trend)

        if stored:
            logger.info(
                "Stored %d trend records (%d signals, %d distinct queries)",
                len(stored), len(signals), len(newest),
            )
        return stored

    def get(self, trend_id: str) -> Trend | None:
        return get_trend(self.conn, trend_id)

    def is_expired(self, trend: Trend, now: datetime | None = None) -> bool:
        now = now or self.clock()
        return trend.age(now) > trend.half_life * self.expiry_multiplier

    def expires_at(self, trend: Trend) -> datetime:
        return trend.expires_at(self.expiry_multiplier)

    def active_trends(self, now: datetime | None = None) -> list[Trend]:
        """Latest record per query, excluding expired ones."""
        now = now or self.clock()
        return [t for t in get_latest_trends(self.conn) if not self.is_expired(t, now)]


def _same_observation(a: Trend, b: Trend) -> bool:
    return (
        a.observed_at == b.observed_at
        and a.volume == b.volume
        and a.category == b.category
    )
