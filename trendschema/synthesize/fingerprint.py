"""Deterministic change-detection digests for content and trends.

All hashing goes through a stable JSON dump (sorted keys, compact
separators) so identical inputs hash identically regardless of dict order.
"""

from __future__ import annotations

import hashlib
import json

from trendschema.models import ContentDocument, Trend
from trendschema.urls import normalize_url


def _stable_json_dumps(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _digest(obj) -> str:
    return hashlib.sha256(_stable_json_dumps(obj).encode()).hexdigest()[:16]


def content_fingerprint(document: ContentDocument) -> str:
    """Covers everything a builder may read from the document."""
    return _digest({
        "url": normalize_url(document.url),
        "title": document.title,
        "text": document.text,
        "entities": document.entities,
        "page_type": document.page_type,
    })


def trend_fingerprint(trend: Trend | None) -> str:
    """Query and category only: a newer observation of the same trend keeps it."""
    if trend is None:
        return _digest(None)
    return _digest({"query": trend.query, "category": trend.category})
