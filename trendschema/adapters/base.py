"""Abstract base classes for the external collaborators."""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from trendschema.models import ContentDocument


class BaseTrendSource(ABC):
    """Producer of raw trend documents shaped {query, volume, timestamp, category}."""

    def __init__(self, config: dict, conn: sqlite3.Connection | None = None):
        self.config = config
        self.conn = conn

    @abstractmethod
    async def fetch(self) -> list[dict[str, Any]]:
        """Return raw trend documents not yet handed out."""
        ...

    def acknowledge(self) -> None:
        """Mark the last fetched batch as ingested."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Source name."""
        ...


class BaseContentIndex(ABC):
    """Narrow view of the similarity backend: embeddings in, documents out.

    Implementations raise AdapterUnavailable when the backend cannot be
    reached; a missing document is None, not an error.
    """

    def __init__(self, config: dict, conn: sqlite3.Connection | None = None):
        self.config = config
        self.conn = conn

    @abstractmethod
    async def embed(self, texts: list[str]) -> np.ndarray:
        """Embed query texts. Returns an (N, D) array."""
        ...

    @abstractmethod
    async def count(self, client_id: str) -> int:
        ...

    @abstractmethod
    async def list_documents(
        self, client_id: str, offset: int, limit: int,
    ) -> list[ContentDocument]:
        ...

    @abstractmethod
    async def get_document(self, client_id: str, url: str) -> ContentDocument | None:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        ...
