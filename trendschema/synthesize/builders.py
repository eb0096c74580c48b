"""JSON-LD builders, one per schema type.

Each builder fills the schema's required properties from the content
document and raises IncompleteDataError naming whatever it could not find.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from trendschema.errors import IncompleteDataError
from trendschema.models import ContentDocument, Trend
from trendschema.synthesize import register_schema
from trendschema.synthesize.rules import SCHEMA_TYPES

SCHEMA_CONTEXT = "https://schema.org"
HEADLINE_MAX = 110
DESCRIPTION_MAX = 300

_PRICE_CHARS = re.compile(r"[^\d.\-]")


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _entity(doc: ContentDocument, *names: str) -> Any:
    for name in names:
        value = doc.entities.get(name)
        if not _empty(value):
            return value
    return None


def _text(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return " ".join(value.split())
    return value


def _price(value: Any) -> Any:
    """Strip currency symbols and thousands separators; keep unparseable input as-is."""
    if value is None:
        return None
    cleaned = _PRICE_CHARS.sub("", str(value))
    try:
        return str(Decimal(cleaned).quantize(Decimal("0.01")))
    except (InvalidOperation, ValueError):
        return str(value)


def _description(doc: ContentDocument) -> str | None:
    desc = _entity(doc, "description", "summary")
    if desc is None and doc.text:
        desc = doc.text
    if desc is None:
        return None
    desc = _text(desc)
    return desc if len(desc) <= DESCRIPTION_MAX else desc[: DESCRIPTION_MAX - 1].rstrip() + "…"


def _schema_url(value: Any) -> Any:
    if isinstance(value, str) and value and "://" not in value:
        words = re.split(r"[_\s]+", value.strip())
        return f"{SCHEMA_CONTEXT}/" + "".join(w[:1].upper() + w[1:] for w in words)
    return value


def _require(schema_type: str, doc: ContentDocument, fields: dict[str, Any]) -> None:
    missing = [name for name, value in fields.items() if _empty(value)]
    if missing:
        raise IncompleteDataError(
            f"{schema_type} for {doc.url} is missing {', '.join(missing)}",
            missing=missing,
        )


def _node(type_name: str, **props: Any) -> dict[str, Any]:
    node = {"@type": type_name}
    node.update({k: v for k, v in props.items() if not _empty(v)})
    return node


def _document(schema_type: str, trend: Trend | None, **props: Any) -> dict[str, Any]:
    payload = {"@context": SCHEMA_CONTEXT}
    payload.update(_node(SCHEMA_TYPES[schema_type], **props))
    if trend is not None:
        payload["keywords"] = trend.query
    return payload


def _offer_fields(doc: ContentDocument) -> dict[str, Any]:
    return {
        "price": _price(_entity(doc, "price", "sale_price", "offer_price")),
        "priceCurrency": _text(_entity(doc, "currency", "price_currency", "priceCurrency")),
    }


@register_schema("offer")
def build_offer(doc: ContentDocument, trend: Trend | None = None) -> dict[str, Any]:
    name = _text(_entity(doc, "name") or doc.title)
    offer = _offer_fields(doc)
    _require("offer", doc, {"name": name, **offer})
    return _document(
        "offer", trend,
        name=name,
        description=_description(doc),
        url=doc.url,
        availability=_schema_url(_entity(doc, "availability")),
        validFrom=_text(_entity(doc, "valid_from")),
        priceValidUntil=_text(_entity(doc, "valid_until", "price_valid_until")),
        **offer,
    )


@register_schema("product")
def build_product(doc: ContentDocument, trend: Trend | None = None) -> dict[str, Any]:
    name = _text(_entity(doc, "name") or doc.title)
    offer = _offer_fields(doc)
    _require("product", doc, {"name": name, **offer})
    brand = _entity(doc, "brand")
    return _document(
        "product", trend,
        name=name,
        description=_description(doc),
        image=_entity(doc, "image"),
        sku=_entity(doc, "sku"),
        brand=_node("Brand", name=_text(brand)) if brand else None,
        offers=_node(
            "Offer",
            url=doc.url,
            availability=_schema_url(_entity(doc, "availability")),
            **offer,
        ),
    )


@register_schema("article")
def build_article(doc: ContentDocument, trend: Trend | None = None) -> dict[str, Any]:
    headline = _text(_entity(doc, "headline") or doc.title)
    if isinstance(headline, str) and len(headline) > HEADLINE_MAX:
        headline = headline[: HEADLINE_MAX - 1].rstrip() + "…"
    published = _text(_entity(doc, "date_published", "published_at"))
    author = _text(_entity(doc, "author"))
    _require("article", doc, {"headline": headline, "datePublished": published, "author": author})
    return _document(
        "article", trend,
        headline=headline,
        description=_description(doc),
        datePublished=published,
        dateModified=_text(_entity(doc, "date_modified")),
        author=_node("Person", name=author),
        image=_entity(doc, "image"),
        url=doc.url,
    )


@register_schema("event")
def build_event(doc: ContentDocument, trend: Trend | None = None) -> dict[str, Any]:
    name = _text(_entity(doc, "name") or doc.title)
    start = _text(_entity(doc, "start_date"))
    location = _text(_entity(doc, "location", "venue"))
    _require("event", doc, {"name": name, "startDate": start, "location": location})
    if isinstance(location, str) and location.startswith(("http://", "https://")):
        place = _node("VirtualLocation", url=location)
    else:
        place = _node("Place", name=location, address=_text(_entity(doc, "address")))
    return _document(
        "event", trend,
        name=name,
        description=_description(doc),
        startDate=start,
        endDate=_text(_entity(doc, "end_date")),
        location=place,
        url=doc.url,
    )


@register_schema("webpage")
def build_webpage(doc: ContentDocument, trend: Trend | None = None) -> dict[str, Any]:
    name = _text(_entity(doc, "name") or doc.title)
    _require("webpage", doc, {"name": name, "url": doc.url})
    return _document(
        "webpage", trend,
        name=name,
        description=_description(doc),
        url=doc.url,
    )
