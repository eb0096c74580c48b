"""URL normalization for cache keys."""

from __future__ import annotations

from urllib.parse import urlsplit


def normalize_url(url: str) -> str:
    """Reduce a page URL to the path used in cache keys.

    Scheme, host, query string and fragment are dropped and a trailing slash
    is removed (except for the root), so ``https://shop.example/sale/?utm=x``
    and ``/sale`` share a key.
    """
    url = (url or "").strip()
    if not url:
        return ""
    path = urlsplit(url).path if "://" in url or url.startswith("//") else url.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    while len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path
