"""Decision table: (trend category, page type) -> schema type."""

from __future__ import annotations

ANY = "*"

# Lookup order: exact, (category, *), (*, page type), (*, *)
DECISION_TABLE: dict[tuple[str, str], str] = {
    ("ecommerce", "product"): "product",
    ("ecommerce", "article"): "article",
    ("ecommerce", ANY): "offer",
    ("shopping", ANY): "offer",
    ("deals", ANY): "offer",
    ("news", "event"): "event",
    ("news", ANY): "article",
    ("events", ANY): "event",
    ("sports", "event"): "event",
    ("entertainment", "event"): "event",
    (ANY, "product"): "product",
    (ANY, "article"): "article",
    (ANY, "blog"): "article",
    (ANY, "event"): "event",
    (ANY, ANY): "webpage",
}

# schema type -> schema.org @type
SCHEMA_TYPES = {
    "offer": "Offer",
    "product": "Product",
    "article": "Article",
    "event": "Event",
    "webpage": "WebPage",
}


def select_schema_type(category: str | None, page_type: str | None) -> str:
    category = (category or ANY).lower()
    page_type = (page_type or ANY).lower()
    for candidate in (
        (category, page_type),
        (category, ANY),
        (ANY, page_type),
        (ANY, ANY),
    ):
        if candidate in DECISION_TABLE:
            return DECISION_TABLE[candidate]
    return DECISION_TABLE[(ANY, ANY)]
