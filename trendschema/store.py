"""Durable write-through channel for cached artifacts."""

from __future__ import annotations

import logging
import sqlite3

from trendschema.db import load_artifacts, mark_artifact_invalidated, save_artifact
from trendschema.models import Artifact, CacheKey

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Persist committed artifacts so a restarted process can warm its cache.

    Write failures are logged and swallowed: the in-memory cache stays
    authoritative and the row is rewritten on the next commit.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(self, artifact: Artifact) -> None:
        try:
            save_artifact(self.conn, artifact)
        except sqlite3.Error:
            logger.exception("Failed to persist artifact %s v%d", artifact.key, artifact.version)

    def invalidate(self, key: CacheKey) -> None:
        try:
            mark_artifact_invalidated(self.conn, key.client_id, key.url)
        except sqlite3.Error:
            logger.exception("Failed to mark artifact %s invalidated", key)

    def load(self) -> list[tuple[Artifact, bool]]:
        return load_artifacts(self.conn)
