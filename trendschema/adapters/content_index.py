"""Content Index Adapters: client pages and their embedding vectors."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

import httpx
import numpy as np

from trendschema.adapters import register_content_index
from trendschema.adapters.base import BaseContentIndex
from trendschema.adapters.embeddings import embed_texts
from trendschema.config import get_content_index_config
from trendschema.db import count_content_documents, get_content_document, list_content_documents
from trendschema.errors import AdapterUnavailable
from trendschema.models import ContentDocument
from trendschema.retry import retry_async

logger = logging.getLogger(__name__)


@register_content_index("sqlite")
class SQLiteContentIndex(BaseContentIndex):
    """Documents from the local store; query texts embedded with Model2Vec."""

    @property
    def name(self) -> str:
        return "sqlite"

    def _query(self, fn, *args):
        if self.conn is None:
            raise AdapterUnavailable("sqlite content index has no connection")
        try:
            return fn(self.conn, *args)
        except sqlite3.Error as exc:
            raise AdapterUnavailable(f"content store query failed: {exc}") from exc

    async def embed(self, texts: list[str]) -> np.ndarray:
        model_name = get_content_index_config(self.config)["embedding_model"]
        try:
            return await asyncio.to_thread(embed_texts, texts, model_name)
        except (OSError, RuntimeError) as exc:
            raise AdapterUnavailable(f"embedding model unavailable: {exc}") from exc

    async def count(self, client_id: str) -> int:
        return self._query(count_content_documents, client_id)

    async def list_documents(
        self, client_id: str, offset: int, limit: int,
    ) -> list[ContentDocument]:
        return self._query(list_content_documents, client_id, offset, limit)

    async def get_document(self, client_id: str, url: str) -> ContentDocument | None:
        return self._query(get_content_document, client_id, url)


@register_content_index("http")
class HTTPContentIndex(BaseContentIndex):
    """Remote similarity backend speaking a small JSON API.

    POST {base}/embed                              {"texts": [...]} -> {"vectors": [[...]]}
    GET  {base}/clients/{id}/documents?offset&limit -> {"total": n, "documents": [...]}
    GET  {base}/clients/{id}/document?url=...       -> document, or 404
    """

    @property
    def name(self) -> str:
        return "http"

    def __init__(self, config: dict, conn=None):
        super().__init__(config, conn)
        cfg = get_content_index_config(config)
        self.base_url = cfg["base_url"].rstrip("/")
        self.api_key = cfg["api_key"]
        self.timeout = cfg["timeout"]
        self.max_retries = cfg["max_retries"]

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kwargs,
            )
            if resp.status_code != 404:
                resp.raise_for_status()
            return resp

    async def _call(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await retry_async(
                self._request, method, path, max_retries=self.max_retries, **kwargs,
            )
        except (httpx.HTTPError, ConnectionError, TimeoutError) as exc:
            raise AdapterUnavailable(
                f"similarity backend {method} {path} failed: {exc}"
            ) from exc

    async def embed(self, texts: list[str]) -> np.ndarray:
        resp = await self._call("POST", "/embed", json={"texts": texts})
        return np.asarray(resp.json().get("vectors", []), dtype=np.float32)

    async def count(self, client_id: str) -> int:
        resp = await self._call(
            "GET", f"/clients/{client_id}/documents", params={"offset": 0, "limit": 0},
        )
        return int(resp.json().get("total", 0))

    async def list_documents(
        self, client_id: str, offset: int, limit: int,
    ) -> list[ContentDocument]:
        resp = await self._call(
            "GET", f"/clients/{client_id}/documents",
            params={"offset": offset, "limit": limit},
        )
        return [_to_document(client_id, d) for d in resp.json().get("documents", [])]

    async def get_document(self, client_id: str, url: str) -> ContentDocument | None:
        resp = await self._call("GET", f"/clients/{client_id}/document", params={"url": url})
        if resp.status_code == 404:
            return None
        return _to_document(client_id, resp.json())


def _to_document(client_id: str, data: dict[str, Any]) -> ContentDocument:
    crawled = data.get("last_crawled_at")
    if crawled:
        crawled_at = datetime.fromisoformat(crawled.replace("Z", "+00:00"))
    else:
        crawled_at = datetime.now(timezone.utc)
    return ContentDocument(
        client_id=client_id,
        url=data.get("url", ""),
        title=data.get("title", ""),
        text=data.get("text", ""),
        entities=data.get("entities") or {},
        page_type=data.get("page_type", "webpage"),
        embedding=data.get("embedding") or [],
        last_crawled_at=crawled_at,
    )
