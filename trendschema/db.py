"""SQLite document store: schema and query helpers.

This is the local rendition of the external document store. Trend and client
records, crawler-owned content documents, the durable artifact channel and
harvest run records all live here.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from trendschema.models import Artifact, Client, ContentDocument, HarvestRun, Trend
from trendschema.urls import normalize_url

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    api_key TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS trend_documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    body TEXT NOT NULL,
    received_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS source_cursors (
    source TEXT PRIMARY KEY,
    position INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS trends (
    id TEXT PRIMARY KEY,
    query TEXT NOT NULL,
    volume INTEGER NOT NULL,
    category TEXT NOT NULL,
    observed_at TEXT NOT NULL,
    half_life_hours REAL NOT NULL,
    seq INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS content_documents (
    client_id TEXT NOT NULL,
    path TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    text TEXT NOT NULL DEFAULT '',
    entities TEXT NOT NULL DEFAULT '{}',
    page_type TEXT NOT NULL DEFAULT 'webpage',
    embedding BLOB,
    last_crawled_at TEXT NOT NULL,
    PRIMARY KEY (client_id, path)
);

CREATE TABLE IF NOT EXISTS artifacts (
    client_id TEXT NOT NULL,
    url TEXT NOT NULL,
    payload TEXT NOT NULL,
    schema_type TEXT NOT NULL,
    source_trend_id TEXT,
    generated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    content_fingerprint TEXT NOT NULL,
    trend_fingerprint TEXT NOT NULL,
    version INTEGER NOT NULL,
    invalidated INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (client_id, url)
);

CREATE TABLE IF NOT EXISTS harvest_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    trends_ingested INTEGER NOT NULL DEFAULT 0,
    clients_processed INTEGER NOT NULL DEFAULT 0,
    clients_degraded INTEGER NOT NULL DEFAULT 0,
    matches_found INTEGER NOT NULL DEFAULT 0,
    artifacts_primed INTEGER NOT NULL DEFAULT 0,
    artifacts_invalidated INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_trends_query ON trends(query, seq);
CREATE INDEX IF NOT EXISTS idx_content_client ON content_documents(client_id);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()


def _dt_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _parse_dt(s: str | None) -> datetime | None:
    if s is None:
        return None
    return datetime.fromisoformat(s)


# --- Client helpers ---


def insert_client(conn: sqlite3.Connection, client: Client) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO clients (id, api_key, name, active) VALUES (?, ?, ?, ?)",
        (client.id, client.api_key, client.name, int(client.active)),
    )
    conn.commit()


def get_client_by_key(conn: sqlite3.Connection, api_key: str) -> Client | None:
    row = conn.execute("SELECT * FROM clients WHERE api_key = ?", (api_key,)).fetchone()
    return _row_to_client(row) if row else None


def list_active_clients(conn: sqlite3.Connection) -> list[Client]:
    rows = conn.execute("SELECT * FROM clients WHERE active = 1 ORDER BY id").fetchall()
    return [_row_to_client(row) for row in rows]


def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(
        id=row["id"],
        api_key=row["api_key"],
        name=row["name"],
        active=bool(row["active"]),
    )


# --- Raw trend document inbox ---


def insert_trend_document(
    conn: sqlite3.Connection, body: dict[str, Any], received_at: datetime,
) -> int:
    """Append a raw trend document as an external producer would."""
    cur = conn.execute(
        "INSERT INTO trend_documents (body, received_at) VALUES (?, ?)",
        (json.dumps(body, default=str), _dt_str(received_at)),
    )
    conn.commit()
    return cur.lastrowid


def get_trend_documents_after(
    conn: sqlite3.Connection, position: int, limit: int = 1000,
) -> list[tuple[int, dict[str, Any]]]:
    rows = conn.execute(
        "SELECT id, body FROM trend_documents WHERE id > ? ORDER BY id LIMIT ?",
        (position, limit),
    ).fetchall()
    return [(row["id"], json.loads(row["body"])) for row in rows]


def get_cursor(conn: sqlite3.Connection, source: str) -> int:
    row = conn.execute(
        "SELECT position FROM source_cursors WHERE source = ?", (source,)
    ).fetchone()
    return row["position"] if row else 0


def set_cursor(conn: sqlite3.Connection, source: str, position: int) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO source_cursors (source, position) VALUES (?, ?)",
        (source, position),
    )
    conn.commit()


# --- Trend helpers ---


def insert_trend(conn: sqlite3.Connection, trend: Trend) -> bool:
    """Append a trend record. Returns False if this exact record exists."""
    row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM trends").fetchone()
    try:
        conn.execute(
            """INSERT INTO trends
               (id, query, volume, category, observed_at, half_life_hours, seq)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                trend.id,
                trend.query,
                trend.volume,
                trend.category,
                _dt_str(trend.observed_at),
                trend.half_life_hours,
                row["seq"] + 1,
            ),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        return False
    return True


def get_trend(conn: sqlite3.Connection, trend_id: str) -> Trend | None:
    row = conn.execute("SELECT * FROM trends WHERE id = ?", (trend_id,)).fetchone()
    return _row_to_trend(row) if row else None


def get_latest_trend(conn: sqlite3.Connection, query: str) -> Trend | None:
    row = conn.execute(
        "SELECT * FROM trends WHERE query = ? ORDER BY seq DESC LIMIT 1", (query,)
    ).fetchone()
    return _row_to_trend(row) if row else None


def get_latest_trends(conn: sqlite3.Connection) -> list[Trend]:
    """The newest record for every query (superseded records excluded)."""
    rows = conn.execute(
        """SELECT t.* FROM trends t
           JOIN (SELECT query, MAX(seq) AS seq FROM trends GROUP BY query) latest
             ON t.query = latest.query AND t.seq = latest.seq
           ORDER BY t.query"""
    ).fetchall()
    return [_row_to_trend(row) for row in rows]


def _row_to_trend(row: sqlite3.Row) -> Trend:
    return Trend(
        id=row["id"],
        query=row["query"],
        volume=row["volume"],
        category=row["category"],
        observed_at=_parse_dt(row["observed_at"]),
        half_life_hours=row["half_life_hours"],
    )


# --- Content document helpers (written by the crawler) ---


def upsert_content_document(conn: sqlite3.Connection, doc: ContentDocument) -> None:
    embedding = (
        np.asarray(doc.embedding, dtype=np.float32).tobytes() if doc.embedding else None
    )
    conn.execute(
        """INSERT OR REPLACE INTO content_documents
           (client_id, path, url, title, text, entities, page_type, embedding, last_crawled_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            doc.client_id,
            normalize_url(doc.url),
            doc.url,
            doc.title,
            doc.text,
            json.dumps(doc.entities, default=str),
            doc.page_type,
            embedding,
            _dt_str(doc.last_crawled_at),
        ),
    )
    conn.commit()


def count_content_documents(conn: sqlite3.Connection, client_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM content_documents WHERE client_id = ?", (client_id,)
    ).fetchone()
    return row["n"]


def list_content_documents(
    conn: sqlite3.Connection, client_id: str, offset: int, limit: int,
) -> list[ContentDocument]:
    rows = conn.execute(
        """SELECT * FROM content_documents WHERE client_id = ?
           ORDER BY path LIMIT ? OFFSET ?""",
        (client_id, limit, offset),
    ).fetchall()
    return [_row_to_document(row) for row in rows]


def get_content_document(
    conn: sqlite3.Connection, client_id: str, url: str,
) -> ContentDocument | None:
    row = conn.execute(
        "SELECT * FROM content_documents WHERE client_id = ? AND path = ?",
        (client_id, normalize_url(url)),
    ).fetchone()
    return _row_to_document(row) if row else None


def _row_to_document(row: sqlite3.Row) -> ContentDocument:
    blob = row["embedding"]
    return ContentDocument(
        client_id=row["client_id"],
        url=row["url"],
        title=row["title"],
        text=row["text"],
        entities=json.loads(row["entities"]),
        page_type=row["page_type"],
        embedding=np.frombuffer(blob, dtype=np.float32).tolist() if blob else [],
        last_crawled_at=_parse_dt(row["last_crawled_at"]),
    )


# --- Artifact helpers (durable cache channel) ---


def save_artifact(conn: sqlite3.Connection, artifact: Artifact) -> None:
    conn.execute(
        """INSERT OR REPLACE INTO artifacts
           (client_id, url, payload, schema_type, source_trend_id, generated_at,
            expires_at, content_fingerprint, trend_fingerprint, version, invalidated)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
        (
            artifact.client_id,
            artifact.url,
            json.dumps(artifact.payload),
            artifact.schema_type,
            artifact.source_trend_id,
            _dt_str(artifact.generated_at),
            _dt_str(artifact.expires_at),
            artifact.content_fingerprint,
            artifact.trend_fingerprint,
            artifact.version,
        ),
    )
    conn.commit()


def mark_artifact_invalidated(conn: sqlite3.Connection, client_id: str, url: str) -> None:
    """Keep the row (and its version) but stop serving it."""
    conn.execute(
        "UPDATE artifacts SET invalidated = 1 WHERE client_id = ? AND url = ?",
        (client_id, url),
    )
    conn.commit()


def load_artifacts(conn: sqlite3.Connection) -> list[tuple[Artifact, bool]]:
    """All stored artifacts with their invalidated flag."""
    rows = conn.execute("SELECT * FROM artifacts").fetchall()
    return [(_row_to_artifact(row), bool(row["invalidated"])) for row in rows]


def _row_to_artifact(row: sqlite3.Row) -> Artifact:
    return Artifact(
        client_id=row["client_id"],
        url=row["url"],
        payload=json.loads(row["payload"]),
        schema_type=row["schema_type"],
        source_trend_id=row["source_trend_id"],
        generated_at=_parse_dt(row["generated_at"]),
        expires_at=_parse_dt(row["expires_at"]),
        content_fingerprint=row["content_fingerprint"],
        trend_fingerprint=row["trend_fingerprint"],
        version=row["version"],
    )


# --- HarvestRun helpers ---


def insert_run(conn: sqlite3.Connection, run: HarvestRun) -> int:
    cur = conn.execute(
        "INSERT INTO harvest_runs (started_at, status) VALUES (?, ?)",
        (_dt_str(run.started_at), run.status),
    )
    conn.commit()
    return cur.lastrowid


def finish_run(conn: sqlite3.Connection, run_id: int, run: HarvestRun) -> None:
    conn.execute(
        """UPDATE harvest_runs SET
           finished_at = ?, status = ?, trends_ingested = ?,
           clients_processed = ?, clients_degraded = ?, matches_found = ?,
           artifacts_primed = ?, artifacts_invalidated = ?
           WHERE id = ?""",
        (
            _dt_str(run.finished_at),
            run.status,
            run.trends_ingested,
            run.clients_processed,
            run.clients_degraded,
            run.matches_found,
            run.artifacts_primed,
            run.artifacts_invalidated,
            run_id,
        ),
    )
    conn.commit()


def get_recent_runs(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Fetch recent harvest runs for stats display."""
    rows = conn.execute(
        "SELECT * FROM harvest_runs ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
    return [dict(row) for row in rows]
