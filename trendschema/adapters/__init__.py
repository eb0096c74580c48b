"""Adapter registries: trend signal sources and content indexes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trendschema.adapters.base import BaseContentIndex, BaseTrendSource

TREND_SOURCES: dict[str, type[BaseTrendSource]] = {}
CONTENT_INDEXES: dict[str, type[BaseContentIndex]] = {}


def register_trend_source(name: str):
    """Decorator to register a trend signal source."""

    def decorator(cls):
        TREND_SOURCES[name] = cls
        return cls

    return decorator


def register_content_index(name: str):
    """Decorator to register a content index backend."""

    def decorator(cls):
        CONTENT_INDEXES[name] = cls
        return cls

    return decorator


# Import implementations to trigger registration
from trendschema.adapters.content_index import HTTPContentIndex, SQLiteContentIndex  # noqa: E402, F401
from trendschema.adapters.sources import DocumentStoreSource, GoogleTrendsSource  # noqa: E402, F401
